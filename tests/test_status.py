"""Tests for FitStatus flags."""

from hurdlekit.core.status import FitStatus


class TestFitStatus:

    def test_ok(self):
        assert FitStatus.OK.describe() == 'ok'
        assert FitStatus.OK.discrete_defined
        assert FitStatus.OK.continuous_defined

    def test_combined_flags(self):
        status = FitStatus.NON_CONVERGED | FitStatus.UNIDENTIFIABLE
        assert status.describe() == 'non_converged|unidentifiable'
        assert not status.discrete_defined
        assert not status.continuous_defined

    def test_boundary_keeps_discrete_likelihood(self):
        assert FitStatus.DISCRETE_BOUNDARY.discrete_defined

    def test_not_fitted(self):
        status = FitStatus.NOT_FITTED
        assert not status.discrete_defined
        assert not status.continuous_defined
        assert int(status) == 8
