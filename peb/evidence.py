from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from .model import BlockModel
from .ops import PSEUDO_INVERSE, inv_spd, log_det, trace_of_product


@dataclass(frozen=True)
class ModelCovariance:
    """Model covariance ``Sy`` and its inverse, tagged with the inversion path."""

    Sy: np.ndarray
    iSy: np.ndarray
    method: str

    @property
    def used_fallback(self) -> bool:
        return self.method == PSEUDO_INVERSE


def data_covariance(Y: np.ndarray) -> np.ndarray:
    """Empirical covariance ``Y Y^T / Nt`` of a (Ny x Nt) data matrix."""
    return (Y @ Y.T) / Y.shape[1]


def model_covariance(
    model: BlockModel,
    lam: float,
    gamma: np.ndarray,
    indices: Sequence[int] | np.ndarray | None = None,
) -> ModelCovariance:
    """
    ``Sy = lam I + sum_k gamma_k HiHi_k`` and its inverse.

    Parameters
    ----------
    model : BlockModel
    lam : float
        Noise power.
    gamma : (Ng,) array
        Per-block source power.
    indices : sequence of int or (Ng,) bool mask, optional
        Restrict the sum to these blocks (all blocks by default).

    Returns
    -------
    ModelCovariance
        ``iSy`` comes from a Cholesky inversion, or from a pseudo-inverse when
        ``Sy`` is not positive definite (see ``method``).
    """
    gamma = np.asarray(gamma, dtype=float).ravel()
    if indices is None:
        indices = np.arange(model.Ng)
    else:
        indices = np.asarray(indices).ravel()
        if indices.dtype == bool:
            if indices.size != model.Ng:
                raise ValueError(
                    f"Boolean indices must have length {model.Ng}, got {indices.size}"
                )
            indices = np.flatnonzero(indices)
        elif indices.size and not np.issubdtype(indices.dtype, np.integer):
            raise ValueError(f"indices must be integer block numbers, got dtype {indices.dtype}")
        indices = indices.astype(np.intp)

    gHHt = np.tensordot(gamma[indices], model.HiHi[indices], axes=1)
    Sy = lam * np.eye(model.Ny) + gHHt
    Sy = 0.5 * (Sy + Sy.T)
    result = inv_spd(Sy)
    return ModelCovariance(Sy=Sy, iSy=result.inverse, method=result.method)


def log_evidence(
    model: BlockModel,
    Cy: np.ndarray,
    lam: float,
    gamma: np.ndarray,
) -> float:
    """
    Approximate marginal log-likelihood of the data.

    Returns
    -------
    float
        ``-0.5 * (tr(Cy Sy^{-1}) + log det(Sy))``; larger is better.
    """
    cov = model_covariance(model, lam, gamma)
    return float(-0.5 * (trace_of_product(Cy, cov.iSy) + log_det(cov.Sy)))
