import logging

import numpy as np
import pytest
from scipy.optimize import OptimizeResult
from scipy.stats import norm

from empcal.config import FitConfig
from empcal.inference.model import (
    NONFINITE_NLL,
    InsufficientDataError,
    ModelFitError,
    SystematicErrorModel,
    fit_systematic_error_model,
    gaussian_product,
    neg_log_likelihood,
    sanitize_controls,
)
from empcal.simulate import simulate_controls


@pytest.fixture(scope="module")
def controls():
    return simulate_controls(
        n=1500,
        mean=0.0,
        sd=0.25,
        true_log_rr=np.log([1.0, 2.0, 4.0]),
        seed=42,
    )


@pytest.fixture(scope="module")
def fitted(controls):
    return fit_systematic_error_model(controls["log_rr"], controls["se_log_rr"], controls["true_log_rr"])


def test_recovers_constant_error_model(fitted):
    assert abs(fitted.mean_intercept) < 0.05
    assert abs(fitted.mean_slope - 1.0) < 0.1
    assert abs(fitted.log_sd_intercept - np.log(0.25)) < 0.2
    assert abs(fitted.log_sd_slope) < 0.25


def test_covariance_consistency(fitted):
    cov = fitted.covariance
    assert cov.shape == (4, 4)
    assert np.allclose(cov, cov.T)
    stderr = np.sqrt(np.diag(cov))
    assert np.all(np.isfinite(stderr))
    assert np.allclose(fitted.stderr, stderr)
    assert np.allclose(fitted.lb95, fitted.params + norm.ppf(0.025) * stderr)
    assert np.allclose(fitted.ub95, fitted.params + norm.ppf(0.975) * stderr)
    assert np.all(fitted.lb95 < fitted.params)
    assert np.all(fitted.ub95 > fitted.params)


def test_fit_without_covariance(controls):
    model = fit_systematic_error_model(
        controls["log_rr"][:300],
        controls["se_log_rr"][:300],
        controls["true_log_rr"][:300],
        estimate_covariance_matrix=False,
    )
    assert model.covariance is None
    assert model.lb95 is None
    assert list(model.to_frame().columns) == ["estimate"]


def test_to_frame_lists_parameters(fitted):
    frame = fitted.to_frame()
    assert list(frame.index) == ["mean_intercept", "mean_slope", "log_sd_intercept", "log_sd_slope"]
    assert list(frame.columns) == ["estimate", "stderr", "lb95", "ub95"]
    assert frame.loc["mean_slope", "estimate"] == fitted.mean_slope


def test_model_functions():
    model = SystematicErrorModel(0.1, 0.5, np.log(0.2), 0.3)
    assert np.isclose(model.bias(2.0), 1.1)
    assert np.isclose(model.noise_sd(0.0), 0.2)
    assert np.allclose(model.noise_sd([0.0, 1.0]), [0.2, 0.2 * np.exp(0.3)])


def test_from_params_requires_four_values():
    with pytest.raises(ValueError):
        SystematicErrorModel.from_params([0.0, 1.0, -2.0])


class TestSanitize:
    """Removal of unusable control estimates before fitting."""

    def test_drops_non_finite_rows(self, caplog):
        log_rr = [0.1, np.inf, 0.2, np.nan, 0.3, 0.4]
        se = [0.1, 0.1, np.inf, 0.1, np.nan, 0.1]
        truth = [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
        with caplog.at_level(logging.WARNING, logger="empcal.inference.model"):
            lr, s, t = sanitize_controls(log_rr, se, truth)
        assert np.allclose(lr, [0.1, 0.4])
        assert np.allclose(s, [0.1, 0.1])
        assert np.allclose(t, [0.0, 5.0])
        messages = [record.getMessage() for record in caplog.records]
        assert len(messages) == 4
        assert "infinite standard error" in messages[0]
        assert "NA standard error" in messages[1]
        assert "infinite log_rr" in messages[2]
        assert "NA log_rr" in messages[3]

    def test_missing_values_are_treated_as_na(self):
        lr, s, t = sanitize_controls([0.1, None], [0.1, 0.2], [0.0, 0.0])
        assert lr.size == 1

    def test_clean_input_is_silent(self, caplog):
        with caplog.at_level(logging.WARNING):
            lr, _, _ = sanitize_controls([0.1, 0.2], [0.1, 0.1], [0.0, 0.0])
        assert lr.size == 2
        assert not caplog.records

    def test_unequal_lengths(self):
        with pytest.raises(ValueError):
            sanitize_controls([0.1, 0.2], [0.1], [0.0, 0.0])


class TestLikelihood:
    def test_gaussian_product_matches_normal_density(self):
        value = gaussian_product(0.3, 0.1, 0.2, 0.15)
        assert np.isclose(value, norm.pdf(0.3, loc=0.1, scale=0.25))

    def test_matches_scipy_log_density(self):
        theta = np.array([0.1, 0.9, np.log(0.2), 0.1])
        log_rr = np.array([0.0, 0.5, 1.2])
        se = np.array([0.1, 0.2, 0.15])
        truth = np.array([0.0, 0.7, 1.4])
        mean = theta[0] + theta[1] * truth
        sd = np.sqrt(np.exp(2 * (theta[2] + theta[3] * truth)) + se**2)
        expected = -np.sum(norm.logpdf(log_rr, loc=mean, scale=sd))
        assert np.isclose(neg_log_likelihood(theta, log_rr, se, truth), expected)

    def test_underflow_returns_sentinel(self):
        theta = np.array([0.0, 1.0, -20.0, 0.0])
        value = neg_log_likelihood(theta, np.array([1e6]), np.array([1e-3]), np.array([0.0]))
        assert value == NONFINITE_NLL


class TestFitFailures:
    def test_empty_after_sanitizing(self):
        with pytest.raises(InsufficientDataError):
            fit_systematic_error_model([np.nan, np.inf], [0.1, 0.1], [0.0, 0.0])

    def test_singular_hessian(self):
        data = simulate_controls(n=100, sd=0.2, true_log_rr=0.0, seed=1)
        with pytest.raises(ModelFitError):
            fit_systematic_error_model(data["log_rr"], data["se_log_rr"], data["true_log_rr"])

    def test_singular_data_fits_without_covariance(self):
        data = simulate_controls(n=100, sd=0.2, true_log_rr=0.0, seed=1)
        model = fit_systematic_error_model(
            data["log_rr"], data["se_log_rr"], data["true_log_rr"], estimate_covariance_matrix=False
        )
        assert np.isfinite(model.mean_intercept)


class TestInjectedMinimizer:
    def _data(self):
        return (
            np.array([0.1, np.nan, 0.3, 0.5]),
            np.array([0.1, 0.1, 0.2, 0.1]),
            np.array([0.0, 0.0, 0.7, 1.4]),
        )

    def test_uses_injected_minimizer(self):
        calls = []

        def fake_minimizer(objective, x0):
            calls.append((objective, x0))
            return OptimizeResult(x=np.array([0.05, 1.1, -1.5, 0.2]), success=True, status=0, message="ok")

        log_rr, se, truth = self._data()
        model = fit_systematic_error_model(log_rr, se, truth, estimate_covariance_matrix=False, minimizer=fake_minimizer)
        assert np.allclose(model.params, [0.05, 1.1, -1.5, 0.2])
        objective, x0 = calls[0]
        assert np.allclose(x0, [0.0, 1.0, -2.0, 0.0])
        keep = np.isfinite(log_rr)
        expected = neg_log_likelihood(x0, log_rr[keep], se[keep], truth[keep])
        assert np.isclose(objective(x0), expected)

    def test_start_comes_from_config(self):
        seen = {}

        def fake_minimizer(objective, x0):
            seen["x0"] = x0
            return OptimizeResult(x=x0, success=True, status=0, message="ok")

        log_rr, se, truth = self._data()
        config = FitConfig(start=[0.5, 0.5, -1.0, 0.1])
        fit_systematic_error_model(log_rr, se, truth, False, config=config, minimizer=fake_minimizer)
        assert np.allclose(seen["x0"], [0.5, 0.5, -1.0, 0.1])

    def test_non_convergence_is_fatal(self):
        def fake_minimizer(objective, x0):
            return OptimizeResult(x=x0, success=False, status=1, message="Maximum number of iterations")

        with pytest.raises(ModelFitError):
            fit_systematic_error_model(*self._data(), minimizer=fake_minimizer)

    def test_non_finite_optimum_is_fatal(self):
        def fake_minimizer(objective, x0):
            return OptimizeResult(x=np.array([np.nan, 1.0, -2.0, 0.0]), success=False, status=3, message="NaN")

        with pytest.raises(ModelFitError):
            fit_systematic_error_model(*self._data(), minimizer=fake_minimizer)

    def test_precision_loss_is_accepted(self, caplog):
        def fake_minimizer(objective, x0):
            return OptimizeResult(
                x=np.array([0.0, 1.0, -2.0, 0.0]),
                success=False,
                status=2,
                message="Desired error not necessarily achieved due to precision loss.",
            )

        with caplog.at_level(logging.WARNING, logger="empcal.inference.model"):
            model = fit_systematic_error_model(
                *self._data(), estimate_covariance_matrix=False, minimizer=fake_minimizer
            )
        assert model.mean_slope == 1.0
        assert any("precision loss" in record.getMessage() for record in caplog.records)


def test_covariance_flag_read_from_config(controls):
    subset = controls.iloc[:300]
    model = fit_systematic_error_model(
        subset["log_rr"],
        subset["se_log_rr"],
        subset["true_log_rr"],
        config=FitConfig(estimate_covariance_matrix=False),
    )
    assert model.covariance is None
    assert model.lb95 is None


def test_explicit_covariance_flag_overrides_config(controls):
    subset = controls.iloc[:300]
    model = fit_systematic_error_model(
        subset["log_rr"],
        subset["se_log_rr"],
        subset["true_log_rr"],
        estimate_covariance_matrix=True,
        config=FitConfig(estimate_covariance_matrix=False),
    )
    assert model.covariance is not None
