"""One-time construction of the block-structured prior model.

Given a forward matrix ``H`` (Ny x Nx), a prior precision matrix ``Delta``
(Nx x Nx) and a partition of the Nx sources into Ng blocks, this module
precomputes everything the learning stages reuse:

* per-block standardized gains ``Hi_k = H[:, b_k] sqCi_k`` and their Gram
  matrices ``HiHi_k = Hi_k Hi_k^T``,
* per-block covariance templates ``Ci_k`` stored as columns of a sparse
  (Nx^2 x Ng) matrix, so that ``Sx = reshape(Ci @ gamma)``,
* the spectrum ``s2`` and basis ``Ut`` of ``H`` whitened through the Cholesky
  factor of the unweighted prior covariance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import scipy.sparse as sp
from scipy.linalg import cholesky, inv, svd

from ._validation import (
    _validate_blocks,
    _validate_forward_matrix,
    _validate_precision_matrix,
)
from .ops import repair_zero_diagonal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockModel:
    """Immutable per-block and global artifacts of a PEB model."""

    H: np.ndarray
    blocks: tuple[np.ndarray, ...]
    Hi: tuple[np.ndarray, ...]
    HiHi: np.ndarray  # (Ng, Ny, Ny)
    Ci: sp.csc_matrix  # (Nx^2, Ng)
    s2: np.ndarray
    Ut: np.ndarray

    @property
    def Ny(self) -> int:
        return self.H.shape[0]

    @property
    def Nx(self) -> int:
        return self.H.shape[1]

    @property
    def Ng(self) -> int:
        return len(self.blocks)

    def prior_covariance(self, gamma: np.ndarray) -> sp.csr_matrix:
        """Sparse source covariance ``Sx = sum_k gamma_k Ci_k`` as (Nx x Nx)."""
        gamma = np.asarray(gamma, dtype=float).ravel()
        if gamma.size != self.Ng:
            raise ValueError(f"gamma must have length {self.Ng}, got {gamma.size}")
        flat = self.Ci @ gamma
        return sp.csr_matrix(flat.reshape(self.Nx, self.Nx))

    def unweighted_prior_covariance(self) -> np.ndarray:
        """Dense ``C = sum_k Ci_k`` with zero diagonal entries repaired."""
        return _unweighted_prior(self.Ci, self.Nx)


def _unweighted_prior(Ci: sp.spmatrix, Nx: int) -> np.ndarray:
    C = np.asarray(Ci.sum(axis=1)).reshape(Nx, Nx)
    return repair_zero_diagonal(0.5 * (C + C.T))


def normalized_block_covariance(Delta_k: np.ndarray, k: int = 0) -> np.ndarray:
    """Inverse of a block precision, scaled to unit Frobenius norm."""
    try:
        sqC = inv(Delta_k)
    except np.linalg.LinAlgError as exc:
        raise ValueError(
            f"Precision submatrix of block {k} is singular. "
            f"Each block's precision must be invertible."
        ) from exc
    return sqC / np.linalg.norm(sqC, "fro")


def block_template_coordinates(idx: np.ndarray, Nx: int) -> np.ndarray:
    """Row-major positions of the (idx x idx) sub-block inside vec(Nx x Nx)."""
    return (idx[:, None] * Nx + idx[None, :]).ravel()


def assemble_prior_covariance(templates: list[np.ndarray], blocks: list[np.ndarray], Nx: int) -> sp.csc_matrix:
    """Stack per-block covariance templates into a sparse (Nx^2 x Ng) matrix."""
    rows, cols, vals = [], [], []
    for k, (T, idx) in enumerate(zip(templates, blocks)):
        rows.append(block_template_coordinates(idx, Nx))
        cols.append(np.full(idx.size * idx.size, k, dtype=np.intp))
        vals.append(T.ravel())
    return sp.csc_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(Nx * Nx, len(blocks)),
    )


def build_block_model(H: Any, Delta: Any, blocks: Any) -> BlockModel:
    """
    Precompute the per-block matrices and the whitening spectrum.

    Parameters
    ----------
    H : (Ny x Nx) array
        Forward matrix.
    Delta : (Nx x Nx) array
        Prior precision matrix; only its block-diagonal submatrices are used.
    blocks : (Nx x Ng) mask or sequence of index arrays
        Block partition of the sources (blocks may overlap).

    Returns
    -------
    BlockModel

    Raises
    ------
    ValueError
        If a block precision is singular or the repaired unweighted prior
        covariance is not positive definite.
    """
    H = _validate_forward_matrix(H)
    Ny, Nx = H.shape
    Delta = _validate_precision_matrix(Delta, Nx)
    index_sets = _validate_blocks(blocks, Nx)
    Ng = len(index_sets)

    Hi = []
    HiHi = np.empty((Ng, Ny, Ny))
    templates = []
    for k, idx in enumerate(index_sets):
        sqCi = normalized_block_covariance(Delta[np.ix_(idx, idx)], k)
        templates.append(sqCi @ sqCi.T)
        Hk = H[:, idx] @ sqCi
        Hi.append(Hk)
        HiHi[k] = Hk @ Hk.T

    Ci = assemble_prior_covariance(templates, index_sets, Nx)

    C = _unweighted_prior(Ci, Nx)
    try:
        sqC = cholesky(C, lower=True)
    except np.linalg.LinAlgError as exc:
        raise ValueError(
            "Unweighted prior covariance is not positive definite after diagonal "
            "repair. Check the block precision matrices and the block partition."
        ) from exc

    # H C H^T = (H L)(H L)^T with C = L L^T
    U, s, _ = svd(H @ sqC, full_matrices=False)
    logger.debug("Built block model: Ny=%d Nx=%d Ng=%d rank=%d", Ny, Nx, Ng, s.size)

    return BlockModel(
        H=H,
        blocks=tuple(index_sets),
        Hi=tuple(Hi),
        HiHi=HiHi,
        Ci=Ci,
        s2=s**2,
        Ut=U.T,
    )
