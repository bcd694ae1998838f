import logging

import numpy as np
import numpy.linalg as npl
import pytest

from peb.ops import (
    CHOLESKY,
    PSEUDO_INVERSE,
    inv_spd,
    log_det,
    pinv_symmetric,
    repair_zero_diagonal,
    trace_of_product,
)

RTOL = 1e-9
ATOL = 1e-10


def rand_spd(n, rng):
    A = rng.standard_normal((n, n))
    return A @ A.T + n * np.eye(n)


def test_inv_spd_matches_dense_inverse_on_spd():
    rng = np.random.default_rng(0)
    S = rand_spd(6, rng)

    result = inv_spd(S)

    assert result.method == CHOLESKY
    assert not result.used_fallback
    assert np.allclose(result.inverse, npl.inv(S), rtol=RTOL, atol=ATOL)
    assert np.array_equal(result.inverse, result.inverse.T)


def test_inv_spd_falls_back_on_rank_deficient(caplog):
    rng = np.random.default_rng(1)
    S = np.zeros((6, 6))
    S[:3, :3] = rand_spd(3, rng)  # rank 3

    with caplog.at_level(logging.WARNING, logger="peb.ops"):
        result = inv_spd(S)

    assert result.method == PSEUDO_INVERSE
    assert result.used_fallback
    assert np.array_equal(result.inverse, result.inverse.T)
    assert np.allclose(result.inverse, npl.pinv(S), atol=1e-8)
    assert "rank deficient" in caplog.text


def test_pseudo_inverse_of_zero_matrix_is_zero():
    S = np.zeros((4, 4))
    result = inv_spd(S)
    assert result.used_fallback
    assert np.array_equal(result.inverse, np.zeros((4, 4)))


def test_pinv_symmetric_is_symmetric_for_indefinite_input():
    S = np.array([[0.0, 2.0, 0.0], [2.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
    P = pinv_symmetric(S)
    assert np.array_equal(P, P.T)
    assert np.allclose(S @ P @ S, S, atol=ATOL)


def test_log_det_matches_slogdet_on_spd():
    rng = np.random.default_rng(2)
    S = rand_spd(8, rng)
    assert np.isclose(log_det(S), npl.slogdet(S)[1], rtol=RTOL, atol=ATOL)


@pytest.mark.parametrize("scale", [1e100, 1e200])
def test_log_det_survives_determinant_overflow(scale):
    n = 5
    S = scale * np.eye(n)
    value = log_det(S)
    assert np.isfinite(value)
    assert np.isclose(value, n * np.log(scale), rtol=1e-12)


def test_log_det_clamps_negative_eigenvalues():
    S = np.diag([1.0, -1e-20])
    assert np.isclose(log_det(S), np.log(np.finfo(float).eps))


def test_repair_zero_diagonal_uses_median_of_nonzero_entries():
    C = np.diag([2.0, 0.0, 4.0, 0.0])
    C[0, 2] = C[2, 0] = 0.5
    repaired = repair_zero_diagonal(C)
    assert np.allclose(np.diag(repaired), [2.0, 3.0, 4.0, 3.0])
    assert repaired[0, 2] == 0.5
    # input is left untouched
    assert C[1, 1] == 0.0


def test_repair_zero_diagonal_rejects_empty_diagonal():
    with pytest.raises(ValueError, match="all-zero diagonal"):
        repair_zero_diagonal(np.zeros((3, 3)))


def test_trace_of_product():
    rng = np.random.default_rng(3)
    A = rng.standard_normal((4, 5))
    B = rng.standard_normal((5, 4))
    assert np.isclose(trace_of_product(A, B), np.trace(A @ B))
