"""Sub-pixel peak position of a line-sensor profile via a 1-D Gaussian fit."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy import optimize

from .errors import FitError, Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FitResult:
    """Gaussian parameters in pixel units: A * exp(-(x - mean)^2 / (2 sigma^2))."""

    amplitude: float
    mean: float
    sigma: float


def _as_samples(profile: Any) -> np.ndarray:
    arr = np.asarray(profile, dtype=float).ravel()
    if arr.size == 0:
        raise FitError("Empty profile")
    if not np.all(np.isfinite(arr)):
        raise FitError("Profile contains non-finite samples")
    return arr


def moment_estimate(profile: Any) -> FitResult:
    """Initial (amplitude, mean, sigma) from intensity-weighted moments.

    The profile minimum is treated as baseline. Flat profiles (all zero or
    uniformly saturated) and single-pixel peaks have no usable second moment
    and raise `FitError` so they never reach the solver.
    """

    y = _as_samples(profile)
    jm = y - float(y.min())
    total = float(jm.sum())
    if total <= 0.0:
        raise FitError("Profile is flat (no signal or uniformly saturated)")

    x = np.arange(y.size, dtype=float)
    mean = float((x * jm).sum() / total)
    var = float((((x - mean) ** 2) * jm).sum() / total)
    if not math.isfinite(var) or var <= 0.0:
        raise FitError(f"Degenerate profile moments (variance={var})")
    return FitResult(amplitude=float(y.max()), mean=mean, sigma=math.sqrt(var))


def _gaussian(p: np.ndarray, x: np.ndarray) -> np.ndarray:
    amplitude, mean, sigma = p
    return amplitude * np.exp(-((x - mean) ** 2) / (2.0 * sigma**2))


def _jacobian(p: np.ndarray, x: np.ndarray, _y: np.ndarray) -> np.ndarray:
    amplitude, mean, sigma = p
    d = x - mean
    e = np.exp(-(d**2) / (2.0 * sigma**2))
    return np.column_stack(
        (
            e,
            amplitude * e * d / sigma**2,
            amplitude * e * d**2 / sigma**3,
        )
    )


def _residuals(p: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    return _gaussian(p, x) - y


@dataclass(slots=True)
class PeakFitter:
    """Moment-seeded Levenberg-Marquardt Gaussian fitter.

    `rel_tolerance` bounds the relative improvement of the residual sum of
    squares (and of the parameters) below which refinement stops;
    `max_iterations` caps residual evaluations.
    """

    rel_tolerance: float = 1e-10
    max_iterations: int = 200

    def __post_init__(self) -> None:
        if not 0.0 < self.rel_tolerance < 1.0:
            raise ValueError("rel_tolerance must be in (0, 1)")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")

    def fit(self, profile: Any) -> Outcome[FitResult]:
        try:
            return Outcome.success(self._fit(profile))
        except FitError as exc:
            return Outcome.failure(exc)

    def _fit(self, profile: Any) -> FitResult:
        seed = moment_estimate(profile)
        y = _as_samples(profile)
        x = np.arange(y.size, dtype=float)
        p0 = np.array([seed.amplitude, seed.mean, seed.sigma], dtype=float)

        try:
            result = optimize.least_squares(
                _residuals,
                p0,
                jac=_jacobian,
                args=(x, y),
                method="lm",
                ftol=self.rel_tolerance,
                xtol=self.rel_tolerance,
                max_nfev=self.max_iterations,
            )
        except (ValueError, np.linalg.LinAlgError) as exc:
            raise FitError(f"Gaussian refinement failed: {exc}") from exc

        if result.status < 0:
            raise FitError(f"Gaussian refinement failed: {result.message}")

        amplitude, mean, sigma = (float(v) for v in result.x)
        if not all(math.isfinite(v) for v in (amplitude, mean, sigma)):
            raise FitError("Gaussian refinement diverged (non-finite parameters)")
        if amplitude <= 0.0:
            raise FitError(f"Gaussian refinement diverged (amplitude={amplitude:g})")
        if sigma <= 0.0:
            raise FitError(f"Gaussian sigma collapsed to {sigma:g}")
        if not 0.0 <= mean <= float(y.size - 1):
            raise FitError(f"Fitted mean {mean:0.3f} outside profile range [0, {y.size - 1}]")

        logger.debug(
            "Gaussian fit: A=%.3f mean=%.4f sigma=%.4f nfev=%d",
            amplitude,
            mean,
            sigma,
            result.nfev,
        )
        return FitResult(amplitude=amplitude, mean=mean, sigma=sigma)


def fit_gaussian(profile: Any) -> Outcome[FitResult]:
    """Fit with default tolerances."""
    return PeakFitter().fit(profile)
