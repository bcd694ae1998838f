"""High-level estimator API for block-structured parametric empirical Bayes."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np
import scipy.sparse as sp

from ._validation import (
    PEBOptions,
    _validate_hyperparameters,
    _validate_observations,
    _validate_options,
)
from .evidence import ModelCovariance, data_covariance, log_evidence, model_covariance
from .history import History, LambdaSmoother
from .model import BlockModel, build_block_model
from .stages import fit_global, init_hyperparameters, prune_blocks


class PEB:
    """Hierarchical Bayesian source estimator with one power per block.

    The model ``Y = H X + noise`` is given a Gaussian prior on ``X`` whose
    covariance is ``sum_k gamma_k C_k`` over blocks of sources, and Gaussian
    noise of power ``lambda``. ``learning`` estimates the hyperparameters by
    evidence maximization (a global fit followed by optional pruning) and
    stores the linear inference operator ``Tx_``; ``inference`` applies it.

    An instance owns two pieces of mutable state across calls: the inference
    operator ``Tx_`` (rewritten by every ``learning``) and the noise-smoothing
    FIFO (updated by every call with ``smooth_lambda``). Calls on one instance
    must not run concurrently; the precomputed ``model`` is read-only and may
    be shared.

    Parameters
    ----------
    H : (Ny x Nx) array
        Forward matrix.
    Delta : (Nx x Nx) array
        Prior precision matrix.
    blocks : (Nx x Ng) mask or sequence of index arrays
        Block partition of the sources.
    options : PEBOptions or mapping, optional
        Default options for ``learning`` and ``update``.
    """

    def __init__(
        self,
        H: Any,
        Delta: Any,
        blocks: Any,
        options: PEBOptions | Mapping[str, Any] | None = None,
    ) -> None:
        self.options = _validate_options(options)
        self.model: BlockModel = build_block_model(H, Delta, blocks)
        self._smoother = LambdaSmoother(self.options.buffer_size)
        self.Tx_: np.ndarray | None = None

    # ------------------------------------------------------------------
    # Model dimensions
    # ------------------------------------------------------------------
    @property
    def Ny(self) -> int:
        return self.model.Ny

    @property
    def Nx(self) -> int:
        return self.model.Nx

    @property
    def Ng(self) -> int:
        return self.model.Ng

    @property
    def H(self) -> np.ndarray:
        return self.model.H

    @property
    def lambda_buffer(self) -> np.ndarray:
        return self._smoother.buffer.copy()

    # ------------------------------------------------------------------
    # Scikit-learn style option protocol
    # ------------------------------------------------------------------
    def get_params(self, deep: bool = True) -> dict[str, Any]:
        return dataclasses.asdict(self.options)

    def set_params(self, **params: Any) -> PEB:
        self.options = _validate_options(params, base=self.options)
        return self

    # ------------------------------------------------------------------
    # Learning / inference
    # ------------------------------------------------------------------
    def learning(
        self,
        Y: Any,
        lambda0: float | None = None,
        gamma0: float | Sequence[float] | np.ndarray | None = None,
        options: PEBOptions | Mapping[str, Any] | None = None,
    ) -> tuple[float, np.ndarray, float, History]:
        """
        Estimate the hyperparameters and build the inference operator.

        Parameters
        ----------
        Y : (Ny x Nt) array
            Observations.
        lambda0, gamma0 : optional
            Initial noise and source power. When both are omitted they come
            from ``init_hyperparameters``; supplying only one is an error.
        options : PEBOptions or mapping, optional
            Overrides of the instance options for this call.

        Returns
        -------
        lam, gamma, gamma_F, history
        """
        opts = _validate_options(options, base=self.options)
        Y = _validate_observations(Y, self.Ny)
        lam0, gam0 = _validate_hyperparameters(lambda0, gamma0, self.Ng)

        if lam0 is None and gam0 is None:
            lam0, g = init_hyperparameters(self.model, Y)
            gam0 = np.full(self.Ng, g)
        elif lam0 is None or gam0 is None:
            raise ValueError(
                "learning needs both lambda0 and gamma0, or neither. "
                "Use init_hyperparameters(Y) to fill in a missing value."
            )

        # both stages share one log
        capacity = max(opts.buffer_size, opts.max_iter * (2 if opts.do_pruning else 1))
        saved_buffer = self._smoother.buffer.copy()
        try:
            lam, gamma_F, gamma, history = fit_global(
                self.model, Y, lam0, gam0, opts, smoother=self._smoother, capacity=capacity
            )
            if opts.do_pruning:
                gamma, history = prune_blocks(self.model, Y, lam, gamma, history, opts)

            Sx = self.model.prior_covariance(gamma)
            iSy = model_covariance(self.model, lam, gamma).iSy
        except Exception:
            self._smoother.buffer = saved_buffer
            raise

        self.Tx_ = np.asarray(Sx @ (self.model.H.T @ iSy))

        self.lambda_ = lam
        self.gamma_ = gamma
        self.gamma_F_ = gamma_F
        self.history_ = history
        return lam, gamma, gamma_F, history

    def _ensure_fitted(self) -> None:
        if self.Tx_ is None:
            raise RuntimeError("The model has not been fitted yet; call learning() first")

    def inference(self, Y: Any) -> np.ndarray:
        """Source estimate ``X = Tx Y`` from the last ``learning`` call."""
        self._ensure_fitted()
        Y = _validate_observations(Y, self.Ny)
        return self.Tx_ @ Y

    def update(
        self,
        Y: Any,
        lambda0: float | None = None,
        gamma0: float | Sequence[float] | np.ndarray | None = None,
        options: PEBOptions | Mapping[str, Any] | None = None,
    ) -> tuple[np.ndarray, float, float, np.ndarray, float]:
        """
        Initialize, learn and infer in one call.

        With neither hyperparameter given both come from the heuristic; with
        only ``lambda0`` given, ``gamma0`` still comes from the heuristic. The
        heuristic is never used to supply ``lambda0`` alone, so passing only
        ``gamma0`` raises ``ValueError``.

        Returns
        -------
        X, lam, gamma_F, gamma, logE
            ``logE`` is the log-evidence of the last recorded iteration.
        """
        Y = _validate_observations(Y, self.Ny)
        if lambda0 is None and gamma0 is not None:
            raise ValueError(
                "update cannot derive lambda0 when only gamma0 is supplied. "
                "Pass lambda0 as well, or neither."
            )
        if lambda0 is not None and gamma0 is None:
            _, gamma0 = init_hyperparameters(self.model, Y)

        lam, gamma, gamma_F, history = self.learning(Y, lambda0, gamma0, options)
        X = self.inference(Y)
        return X, lam, gamma_F, gamma, history.last_logE

    # ------------------------------------------------------------------
    # Model quantities
    # ------------------------------------------------------------------
    def init_hyperparameters(self, Y: Any) -> tuple[float, float]:
        """Heuristic ``(lambda0, gamma0)`` for the data ``Y``."""
        Y = _validate_observations(Y, self.Ny)
        return init_hyperparameters(self.model, Y)

    def model_covariance(
        self,
        lam: float,
        gamma: Any,
        indices: Sequence[int] | None = None,
    ) -> ModelCovariance:
        gamma = self._as_gamma(gamma)
        return model_covariance(self.model, lam, gamma, indices)

    def log_evidence(self, Y: Any, lam: float, gamma: Any) -> float:
        Y = _validate_observations(Y, self.Ny)
        return log_evidence(self.model, data_covariance(Y), lam, self._as_gamma(gamma))

    def prior_covariance(self, gamma: Any) -> sp.csr_matrix:
        return self.model.prior_covariance(self._as_gamma(gamma))

    def reset_smoothing(self) -> None:
        """Forget the noise powers of previous calls."""
        self._smoother.reset()

    def _as_gamma(self, gamma: Any) -> np.ndarray:
        gamma = np.asarray(gamma, dtype=float)
        if gamma.ndim == 0:
            return np.full(self.Ng, float(gamma))
        gamma = gamma.ravel()
        if gamma.size != self.Ng:
            raise ValueError(f"gamma must be a scalar or have length {self.Ng}, got {gamma.size}")
        return gamma
