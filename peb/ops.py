from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.linalg import cho_factor, cho_solve, svd

logger = logging.getLogger(__name__)

CHOLESKY = "cholesky"
PSEUDO_INVERSE = "pseudo_inverse"


@dataclass(frozen=True)
class SymmetricInverse:
    """Inverse of a symmetric matrix tagged with the path that produced it.

    Parameters
    ----------
    inverse:
        Symmetric inverse (or pseudo-inverse) of the input matrix.
    method:
        ``"cholesky"`` when the fast factorization succeeded, ``"pseudo_inverse"``
        when the matrix was not positive definite and the SVD fallback was used.
    """

    inverse: np.ndarray
    method: str

    @property
    def used_fallback(self) -> bool:
        return self.method == PSEUDO_INVERSE


def symmetrize(A: np.ndarray) -> np.ndarray:
    """Return ``(A + A^T) / 2``."""
    return 0.5 * (A + A.T)


def pinv_symmetric(S: np.ndarray) -> np.ndarray:
    """
    SVD pseudo-inverse of a square matrix, returned symmetrized.

    Reciprocals of singular values that are numerically zero
    (``s <= eps * max(shape) * max(s)``) or not finite are set to zero.
    """
    U, s, Vt = svd(S, full_matrices=False, lapack_driver="gesvd")
    s = np.real(s)
    cutoff = np.finfo(float).eps * max(S.shape) * (s.max() if s.size else 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        inv_s = 1.0 / s
    inv_s[~np.isfinite(inv_s)] = 0.0
    inv_s[s <= cutoff] = 0.0
    return symmetrize((Vt.T * inv_s[None, :]) @ U.T)


def inv_spd(S: np.ndarray) -> SymmetricInverse:
    """
    Invert a symmetric matrix through its Cholesky factor, falling back to a
    pseudo-inverse when it is not positive definite.

    The fallback is reported through the ``method`` tag and a logged warning;
    it is never raised.
    """
    S = np.asarray(S, dtype=float)
    try:
        c_and_lower = cho_factor(S, lower=True, check_finite=True)
    except (np.linalg.LinAlgError, ValueError) as exc:
        logger.warning(
            "Cholesky inversion failed (%s). Possibly the data is rank deficient; "
            "using an SVD pseudo-inverse instead.",
            exc,
        )
        return SymmetricInverse(inverse=pinv_symmetric(S), method=PSEUDO_INVERSE)

    inverse = cho_solve(c_and_lower, np.eye(S.shape[0]))
    return SymmetricInverse(inverse=symmetrize(inverse), method=CHOLESKY)


def log_det(S: np.ndarray) -> float:
    """
    ``log(det(S))`` for a symmetric matrix.

    When the determinant over- or underflows (large, ill-conditioned ``S``) the
    value is recomputed from the eigenvalues, clamping any eigenvalue below
    machine epsilon to machine epsilon.
    """
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        log_d = float(np.log(np.linalg.det(S)))
    if np.isfinite(log_d):
        return log_d

    eps = np.finfo(float).eps
    e = np.linalg.eigvalsh(symmetrize(np.asarray(S, dtype=float)))
    e = np.where(e < eps, eps, e)
    return float(np.sum(np.log(e)))


def trace_of_product(A: np.ndarray, B: np.ndarray) -> float:
    """``trace(A @ B)`` without forming the product."""
    return float(np.einsum("ij,ji->", A, B))


def repair_zero_diagonal(C: np.ndarray) -> np.ndarray:
    """
    Replace zero diagonal entries of ``C`` by the median of the nonzero ones.

    Indices covered by no block leave a zero on the diagonal of the summed
    prior covariance; this keeps the matrix invertible.
    """
    C = np.array(C, dtype=float, copy=True)
    dc = np.diag(C).copy()
    zero = dc == 0
    if np.any(zero):
        if np.all(zero):
            raise ValueError(
                "Prior covariance has an all-zero diagonal. "
                "Check that the blocks cover at least one source index."
            )
        dc[zero] = np.median(dc[~zero])
        np.fill_diagonal(C, dc)
    return C
