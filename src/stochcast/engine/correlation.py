"""Correlation matrix validation, PSD repair and Cholesky factoring."""

import logging
import warnings

import numpy as np

from stochcast.errors import ConfigWarning, ValidationError

logger = logging.getLogger(__name__)

STRUCTURE_TOLERANCE = 1e-10
EIGEN_FLOOR = 1e-8
JITTER_STEPS = (0.0, 1e-12, 1e-10, 1e-8, 1e-6)


def validate_correlation_matrix(matrix, n_variables: int) -> np.ndarray:
    """Check shape, unit diagonal, symmetry and range; return a float array.

    Raises:
        ValidationError: on any structural problem. PSD-ness is not checked here.
    """
    arr = np.asarray(matrix, dtype=float)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise ValidationError(f"Correlation matrix must be square, got shape {arr.shape}")
    if arr.shape[0] != n_variables:
        raise ValidationError(
            f"Correlation matrix is {arr.shape[0]}x{arr.shape[1]} but there are {n_variables} variables"
        )
    if not np.all(np.isfinite(arr)):
        raise ValidationError("Correlation matrix contains non-finite entries")

    errors = []
    for i in range(n_variables):
        if abs(arr[i, i] - 1.0) > STRUCTURE_TOLERANCE:
            errors.append(f"diagonal element [{i}][{i}] must be 1, got {arr[i, i]}")
        for j in range(i + 1, n_variables):
            if abs(arr[i, j] - arr[j, i]) > STRUCTURE_TOLERANCE:
                errors.append(f"matrix is not symmetric at [{i}][{j}]: {arr[i, j]} vs {arr[j, i]}")
            if not -1.0 <= arr[i, j] <= 1.0:
                errors.append(f"element [{i}][{j}] = {arr[i, j]} is outside [-1, 1]")
    if errors:
        raise ValidationError(
            f"Invalid correlation matrix: {errors[0]}",
            errors=[{"loc": ["correlation"], "msg": msg, "type": "value_error"} for msg in errors],
        )
    return (arr + arr.T) / 2


def min_eigenvalue(matrix: np.ndarray) -> float:
    return float(np.linalg.eigvalsh(matrix)[0])


def is_positive_semidefinite(matrix: np.ndarray, tolerance: float = 1e-10) -> bool:
    return min_eigenvalue(matrix) >= -tolerance


def nearest_psd_correlation(matrix: np.ndarray, floor: float = EIGEN_FLOOR) -> np.ndarray:
    """Project onto the PSD cone by eigenvalue clipping, then restore the unit diagonal."""
    eigvals, eigvecs = np.linalg.eigh(matrix)
    clipped = np.maximum(eigvals, floor)
    repaired = eigvecs @ np.diag(clipped) @ eigvecs.T
    scale = 1.0 / np.sqrt(np.diag(repaired))
    repaired = repaired * np.outer(scale, scale)
    repaired = (repaired + repaired.T) / 2
    np.fill_diagonal(repaired, 1.0)
    return repaired


def prepare_correlation(matrix, n_variables: int, tolerance: float = 1e-10) -> tuple[np.ndarray, list[str]]:
    """Validate and, if needed, repair a correlation matrix.

    Returns:
        The usable matrix and any non-fatal warnings raised along the way.
    """
    arr = validate_correlation_matrix(matrix, n_variables)
    lowest = min_eigenvalue(arr)
    if lowest >= -tolerance:
        return arr, []

    repaired = nearest_psd_correlation(arr)
    shift = float(np.max(np.abs(repaired - arr)))
    message = (
        f"Correlation matrix is not positive semi-definite (min eigenvalue {lowest:.3g}); "
        f"projected to the nearest PSD correlation matrix (max entry change {shift:.3g})"
    )
    logger.warning(message)
    warnings.warn(message, ConfigWarning, stacklevel=3)
    return repaired, [message]


def cholesky_factor(matrix: np.ndarray) -> np.ndarray:
    """Lower-triangular L with L·Lᵀ ≈ matrix.

    Singular PSD matrices (perfect correlation) get the smallest diagonal
    jitter from JITTER_STEPS that lets the factorisation succeed.
    """
    identity = np.eye(matrix.shape[0])
    for jitter in JITTER_STEPS:
        try:
            factor = np.linalg.cholesky(matrix + jitter * identity)
        except np.linalg.LinAlgError:
            continue
        if jitter:
            logger.debug("Cholesky needed diagonal jitter %.0e", jitter)
        return factor
    raise ValidationError("Correlation matrix could not be factored even after diagonal jitter")


def equicorrelation(n_variables: int, rho: float) -> np.ndarray:
    matrix = np.full((n_variables, n_variables), rho, dtype=float)
    np.fill_diagonal(matrix, 1.0)
    return matrix


def correlate(shocks: np.ndarray, factor: np.ndarray) -> np.ndarray:
    """Apply a Cholesky factor to independent shocks whose last axis is the variable."""
    return shocks @ factor.T
