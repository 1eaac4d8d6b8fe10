"""
RANSAC family of robust estimators.

Every estimator repeatedly draws a minimal subset of measurements, fits
preliminary hypotheses on it, scores each hypothesis against all
measurements and keeps the best one. The number of iterations adapts to
the inlier ratio of the best hypothesis found so far:

    iterations = log(1 - confidence) / log(1 - w^s)

with w the inlier ratio and s the subset size.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

import numpy as np

from imu_calibration.core.exceptions import ConfigurationError, RobustFailureError

logger = logging.getLogger(__name__)

# Normal consistency constant of the median absolute deviation
LMEDS_NORMALIZATION = 1.4826
LMEDS_INLIER_FACTOR = 2.5
LMEDS_BREAKDOWN = 0.5


class RobustMethod(Enum):
    RANSAC = "ransac"
    MSAC = "msac"
    PROSAC = "prosac"
    LMEDS = "lmeds"

    @classmethod
    def parse(cls, value) -> "RobustMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise ConfigurationError(f"Unknown robust method {value!r}") from e


class RobustProblem(ABC):
    """Adapter between an estimator and the model being fitted."""

    @property
    @abstractmethod
    def total_samples(self) -> int:
        pass

    @property
    @abstractmethod
    def subset_size(self) -> int:
        pass

    @property
    @abstractmethod
    def minimum_inliers(self) -> int:
        pass

    @abstractmethod
    def estimate_preliminary_solutions(self, indices: np.ndarray) -> List[Any]:
        """Hypotheses fitted on a subset. Empty when the subset is degenerate."""

    @abstractmethod
    def compute_residuals(self, hypothesis) -> np.ndarray:
        """Residual of every measurement for a hypothesis."""


@dataclass
class RobustResult:
    hypothesis: Any
    inliers: np.ndarray    # boolean mask
    residuals: np.ndarray
    score: float
    iterations: int

    @property
    def inlier_indices(self) -> np.ndarray:
        return np.flatnonzero(self.inliers)

    @property
    def inlier_count(self) -> int:
        return int(np.count_nonzero(self.inliers))


def classify_inliers(residuals: np.ndarray, threshold: float) -> np.ndarray:
    return np.asarray(residuals) <= threshold


def required_iterations(inlier_ratio: float, subset_size: int, confidence: float,
                        max_iterations: int) -> int:
    if inlier_ratio >= 1.0:
        return 1
    p = inlier_ratio ** subset_size
    if p <= 0.0:
        return max_iterations
    n = math.ceil(math.log(1.0 - confidence) / math.log1p(-p))
    return max(1, min(n, max_iterations))


class RobustEstimator(ABC):
    method: RobustMethod

    def __init__(self, problem: RobustProblem, threshold: float = 1e-2,
                 confidence: float = 0.99, max_iterations: int = 5000,
                 progress_delta: float = 0.05, rng: Optional[np.random.Generator] = None,
                 on_iteration: Optional[Callable[[int], None]] = None,
                 on_progress: Optional[Callable[[float], None]] = None):
        self.problem = problem
        self.threshold = threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.rng = rng if rng is not None else np.random.default_rng()
        self.on_iteration = on_iteration
        self.on_progress = on_progress

    @abstractmethod
    def _score(self, residuals: np.ndarray):
        """Returns (score, inlier mask)."""

    @abstractmethod
    def _is_better(self, score: float, best: float) -> bool:
        pass

    def _draw_subset(self, iteration: int) -> np.ndarray:
        return self.rng.choice(self.problem.total_samples, size=self.problem.subset_size, replace=False)

    def _inlier_ratio(self, best: RobustResult) -> float:
        return best.inlier_count / self.problem.total_samples

    def _should_stop(self, best: RobustResult) -> bool:
        return False

    def estimate(self) -> RobustResult:
        problem = self.problem
        if problem.total_samples < problem.subset_size:
            raise RobustFailureError(
                f"{problem.total_samples} measurements, subset needs {problem.subset_size}")

        best: Optional[RobustResult] = None
        budget = self.max_iterations
        iteration = 0
        last_progress = 0.0

        while iteration < budget:
            indices = self._draw_subset(iteration)
            iteration += 1
            if self.on_iteration is not None:
                self.on_iteration(iteration)

            for hypothesis in problem.estimate_preliminary_solutions(indices):
                residuals = problem.compute_residuals(hypothesis)
                score, inliers = self._score(residuals)
                if np.count_nonzero(inliers) < problem.minimum_inliers:
                    continue
                if best is None or self._is_better(score, best.score):
                    best = RobustResult(hypothesis, inliers, residuals, score, iteration)
                    budget = required_iterations(self._inlier_ratio(best), problem.subset_size,
                                                 self.confidence, self.max_iterations)
                    logger.debug("%s iteration %d: new best score %.6g, %d inliers, budget %d",
                                 self.method.name, iteration, score, best.inlier_count, budget)

            progress = min(iteration / budget, 1.0)
            if self.on_progress is not None and progress - last_progress >= self.progress_delta:
                self.on_progress(progress)
                last_progress = progress

            if best is not None and self._should_stop(best):
                break

        if best is None:
            raise RobustFailureError(
                f"{self.method.name}: no hypothesis reached {problem.minimum_inliers} inliers "
                f"after {iteration} iterations")
        best.iterations = iteration
        return best


class RANSACEstimator(RobustEstimator):
    """Maximizes the number of inliers."""
    method = RobustMethod.RANSAC

    def _score(self, residuals):
        inliers = classify_inliers(residuals, self.threshold)
        return float(np.count_nonzero(inliers)), inliers

    def _is_better(self, score, best):
        return score > best


class MSACEstimator(RobustEstimator):
    """Minimizes the truncated residual sum, sum(min(r, threshold))."""
    method = RobustMethod.MSAC

    def _score(self, residuals):
        inliers = classify_inliers(residuals, self.threshold)
        return float(np.sum(np.minimum(residuals, self.threshold))), inliers

    def _is_better(self, score, best):
        return score < best


class PROSACEstimator(RANSACEstimator):
    """
    RANSAC with progressive sampling: subsets are drawn from a growing set
    of the best quality measurements first.
    """
    method = RobustMethod.PROSAC

    def __init__(self, problem: RobustProblem, quality_scores: np.ndarray, **kwargs):
        super().__init__(problem, **kwargs)
        quality_scores = np.asarray(quality_scores, dtype=np.float64)
        if quality_scores.shape != (problem.total_samples,):
            raise ConfigurationError("One quality score per measurement is required")
        # highest quality first
        self._order = np.argsort(-quality_scores, kind="stable")
        self._reset_growth()

    def _reset_growth(self):
        m = self.problem.subset_size
        total = self.problem.total_samples
        self._n = m
        self._t_n = float(self.max_iterations)
        for i in range(m):
            self._t_n *= (m - i) / (total - i)
        self._t_n_prime = 1

    def _draw_subset(self, iteration):
        m = self.problem.subset_size
        total = self.problem.total_samples
        t = iteration + 1
        if t > self._t_n_prime and self._n < total:
            t_next = self._t_n * (self._n + 1) / (self._n + 1 - m)
            self._t_n_prime += math.ceil(t_next - self._t_n)
            self._t_n = t_next
            self._n += 1

        if self._t_n_prime < t:
            chosen = self.rng.choice(self._n, size=m, replace=False)
        else:
            # m - 1 from the first n - 1, plus the n-th one
            chosen = np.append(self.rng.choice(self._n - 1, size=m - 1, replace=False), self._n - 1)
        return self._order[chosen]


class LMedSEstimator(RobustEstimator):
    """
    Minimizes the median residual. Inliers are the measurements within
    2.5 robust standard deviations, never tighter than stop_threshold.
    The iteration budget assumes half of the measurements are outliers;
    the search ends early once the median falls below stop_threshold.
    """
    method = RobustMethod.LMEDS

    def __init__(self, problem: RobustProblem, stop_threshold: float = 1e-3, **kwargs):
        super().__init__(problem, **kwargs)
        self.stop_threshold = stop_threshold

    def _score(self, residuals):
        median = float(np.median(np.square(residuals)))
        dof = max(self.problem.total_samples - self.problem.subset_size, 1)
        sigma = LMEDS_NORMALIZATION * (1.0 + 5.0 / dof) * math.sqrt(median)
        inliers = classify_inliers(residuals, max(LMEDS_INLIER_FACTOR * sigma, self.stop_threshold))
        return math.sqrt(median), inliers

    def _is_better(self, score, best):
        return score < best

    def _inlier_ratio(self, best):
        # the median is only guaranteed to come from inliers up to 50% outliers
        return LMEDS_BREAKDOWN

    def _should_stop(self, best):
        return best.score < self.stop_threshold


def create_estimator(method, problem: RobustProblem, quality_scores=None,
                     stop_threshold: float = 1e-3, **kwargs) -> RobustEstimator:
    method = RobustMethod.parse(method)
    if method is RobustMethod.RANSAC:
        return RANSACEstimator(problem, **kwargs)
    if method is RobustMethod.MSAC:
        return MSACEstimator(problem, **kwargs)
    if method is RobustMethod.PROSAC:
        if quality_scores is None:
            raise ConfigurationError("PROSAC requires quality scores")
        return PROSACEstimator(problem, quality_scores, **kwargs)
    return LMedSEstimator(problem, stop_threshold=stop_threshold, **kwargs)
