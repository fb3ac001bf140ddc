"""Tests for correlation validation, PSD repair and Cholesky factoring."""

import warnings

import numpy as np
import pytest

from stochcast.errors import ConfigWarning, ValidationError
from stochcast.engine.correlation import (
    cholesky_factor,
    correlate,
    equicorrelation,
    is_positive_semidefinite,
    nearest_psd_correlation,
    prepare_correlation,
    validate_correlation_matrix,
)

# Pairwise-valid but jointly impossible correlations.
NON_PSD = [
    [1.0, 0.9, -0.9],
    [0.9, 1.0, 0.9],
    [-0.9, 0.9, 1.0],
]


class TestValidation:
    def test_accepts_valid_matrix(self):
        arr = validate_correlation_matrix([[1.0, 0.3], [0.3, 1.0]], 2)
        assert arr.shape == (2, 2)

    @pytest.mark.parametrize(
        "matrix, n",
        [
            ([[1.0, 0.2, 0.1], [0.2, 1.0, 0.1]], 3),
            ([[1.0, 0.2], [0.2, 1.0]], 3),
            ([[0.9, 0.2], [0.2, 1.0]], 2),
            ([[1.0, 0.2], [0.3, 1.0]], 2),
            ([[1.0, 1.5], [1.5, 1.0]], 2),
            ([[1.0, float("nan")], [float("nan"), 1.0]], 2),
        ],
        ids=["not-square", "wrong-size", "diagonal", "asymmetric", "out-of-range", "nan"],
    )
    def test_rejects_malformed(self, matrix, n):
        with pytest.raises(ValidationError):
            validate_correlation_matrix(matrix, n)

    def test_errors_are_listed(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_correlation_matrix([[0.5, 2.0], [2.0, 0.5]], 2)
        assert len(exc_info.value.errors) == 3


class TestPSDProjection:
    def test_psd_matrix_passes_through(self):
        matrix, notes = prepare_correlation([[1.0, 0.5], [0.5, 1.0]], 2)
        assert notes == []
        np.testing.assert_array_equal(matrix, [[1.0, 0.5], [0.5, 1.0]])

    def test_non_psd_is_projected_with_warning(self):
        assert not is_positive_semidefinite(np.array(NON_PSD))
        with pytest.warns(ConfigWarning):
            matrix, notes = prepare_correlation(NON_PSD, 3)
        assert len(notes) == 1 and "positive semi-definite" in notes[0]
        assert is_positive_semidefinite(matrix)
        np.testing.assert_allclose(np.diag(matrix), 1.0)
        np.testing.assert_allclose(matrix, matrix.T)

    def test_projection_keeps_sign_structure(self):
        repaired = nearest_psd_correlation(np.array(NON_PSD))
        assert repaired[0, 1] > 0 and repaired[1, 2] > 0 and repaired[0, 2] < 0
        assert np.all(np.abs(repaired) <= 1.0 + 1e-12)


class TestCholesky:
    def test_factor_reproduces_matrix(self):
        matrix = np.array([[1.0, 0.6, 0.2], [0.6, 1.0, 0.4], [0.2, 0.4, 1.0]])
        factor = cholesky_factor(matrix)
        np.testing.assert_allclose(factor @ factor.T, matrix, atol=1e-12)
        assert np.allclose(factor, np.tril(factor))

    def test_singular_matrix_gets_jitter(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            factor = cholesky_factor(np.ones((2, 2)))
        np.testing.assert_allclose(factor @ factor.T, np.ones((2, 2)), atol=1e-5)

    def test_identity_leaves_shocks_unchanged(self):
        shocks = np.random.default_rng(3).standard_normal((10, 4, 3))
        np.testing.assert_allclose(correlate(shocks, cholesky_factor(np.eye(3))), shocks)

    def test_correlated_shocks_have_target_correlation(self):
        matrix = np.array([[1.0, 0.7], [0.7, 1.0]])
        z = np.random.default_rng(0).standard_normal((100_000, 2))
        out = correlate(z, cholesky_factor(matrix))
        assert np.corrcoef(out.T)[0, 1] == pytest.approx(0.7, abs=0.01)

    def test_equicorrelation(self):
        m = equicorrelation(3, 0.25)
        assert m[0, 0] == 1.0 and m[1, 2] == 0.25
