import logging

import numpy as np

from ._validation import PEBOptions
from .evidence import data_covariance, log_evidence, model_covariance
from .history import GLOBAL_STAGE, PRUNING_STAGE, History, LambdaSmoother
from .model import BlockModel

logger = logging.getLogger(__name__)

EPS = np.finfo(float).eps


def init_hyperparameters(model: BlockModel, Y: np.ndarray) -> tuple[float, float]:
    """
    Heuristic starting point ``(lambda0, gamma0)``.

    Projects the data onto the whitening basis and fits
    ``(Ut Y)^2 ≈ gamma0 * s2 + lambda0`` by least squares, one fit per column,
    averaged over columns. Absolute values are returned.
    """
    UtY2 = (model.Ut @ Y) ** 2
    S = np.column_stack([model.s2, np.ones_like(model.s2)])
    phi, *_ = np.linalg.lstsq(S, UtY2, rcond=None)
    phi = np.abs(np.mean(phi, axis=1))
    return float(phi[1]), float(phi[0])


def fit_global(
    model: BlockModel,
    Y: np.ndarray,
    lambda0: float,
    gamma0,
    options: PEBOptions,
    smoother: LambdaSmoother | None = None,
    capacity: int | None = None,
):
    """
    Fixed-point fit of one shared source power and the noise power.

    Works entirely in the whitened spectral basis: with
    ``psi = gamma_F * s2 + lambda`` the multiplicative updates are

        lambda  <- lambda  * sum(mean(UtY^2 / psi^2)) / (sum(1 / psi) + eps)
        gamma_F <- gamma_F * sum(mean(UtY^2 s2 / psi^2)) / (sum(s2 / psi) + eps)

    followed by ``gamma_F <- max(gamma_F, gamma_min)``.

    Parameters
    ----------
    model : BlockModel
    Y : (Ny x Nt) array
    lambda0 : float
        Initial noise power.
    gamma0 : float or (Ng,) array
        Initial source power; a vector starts from its mean.
    options : PEBOptions
    smoother : LambdaSmoother, optional
        Noise FIFO used when ``options.smooth_lambda`` is set.
    capacity : int, optional
        Number of records the history can hold; ``options.buffer_size`` by default.

    Returns
    -------
    lam, gamma_F, gamma, history
        ``gamma`` has every entry equal to ``gamma_F``; ``history`` holds one
        record per iteration performed, the first being the initial values.
    """
    UtY2 = (model.Ut @ Y) ** 2
    Cy = data_covariance(Y)
    s2 = model.s2

    lam = float(lambda0)
    gamma_F = float(np.mean(gamma0))
    gamma = np.full(model.Ng, gamma_F)

    history = History(capacity or options.buffer_size)
    history.append(lam, gamma_F, log_evidence(model, Cy, lam, gamma), GLOBAL_STAGE)

    for k in range(2, options.max_iter + 1):
        psi = gamma_F * s2 + lam
        psi2 = psi**2

        lam = lam * np.sum(np.mean(UtY2 / psi2[:, None], axis=1)) / (EPS + np.sum(1.0 / psi))
        gamma_F = gamma_F * np.sum(
            np.mean(UtY2 * (s2 / psi2)[:, None], axis=1)
        ) / (EPS + np.sum(s2 / psi))
        gamma_F = max(float(gamma_F), options.gamma_min)
        lam = float(lam)
        gamma[:] = gamma_F

        history.append(lam, gamma_F, log_evidence(model, Cy, lam, gamma), GLOBAL_STAGE)

        if options.verbose:
            logger.info(
                "%i => diff(logE): %.4g   logE: %.5g   Lambda: %.4g   Gamma: %.4g",
                k, abs(history.improvement()), history.last_logE, lam, gamma_F,
            )

        # Check convergence and exit condition
        if history.converged(options.max_tol):
            break

    if options.smooth_lambda and smoother is not None:
        smoother.resize(options.buffer_size)
        lam = smoother.push(lam)

    return lam, gamma_F, gamma, history


def block_update_terms(model: BlockModel, Y: np.ndarray, iSy: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Per-block numerator ``||Hi^T iSy Y||_F`` and denominator
    ``sqrt(|tr(Hi^T iSy Hi)|)`` of the pruning update.
    """
    num = np.empty(model.Ng)
    den = np.empty(model.Ng)
    for i, Hi in enumerate(model.Hi):
        Hi_iSy = Hi.T @ iSy
        num[i] = np.linalg.norm(Hi_iSy @ Y, "fro")
        den[i] = np.sqrt(np.abs(np.sum(Hi_iSy.T * Hi)))
    return num, den


def prune_blocks(
    model: BlockModel,
    Y: np.ndarray,
    lam: float,
    gamma: np.ndarray,
    history: History,
    options: PEBOptions,
):
    """
    Per-block reweighting of the source power with the noise power held fixed.

    Each iteration applies

        gamma_k <- (gamma_k / sqrt(Nt)) * ||Hi_k^T iSy Y||_F / (sqrt(|tr(Hi_k^T iSy Hi_k)|) + eps)

    No floor is applied, so the power of irrelevant blocks can vanish.
    Records are appended to ``history``, which continues from the global stage.

    Returns
    -------
    gamma, history
    """
    Nt = Y.shape[1]
    Cy = data_covariance(Y)
    gamma = np.array(gamma, dtype=float, copy=True)
    gamma_F = float(history.gamma_F[-1]) if len(history) else float(np.mean(gamma))

    for _ in range(options.max_iter):
        cov = model_covariance(model, lam, gamma)
        num, den = block_update_terms(model, Y, cov.iSy)
        gamma = (gamma / np.sqrt(Nt)) * num / (den + EPS)

        history.append(lam, gamma_F, log_evidence(model, Cy, lam, gamma), PRUNING_STAGE)

        if options.verbose:
            logger.info(
                "%i => diff(logE): %.4g   logE: %.5g   Sum Gamma: %.4g",
                history.pointer, history.improvement(), history.last_logE,
                float(np.sum(gamma[gamma != 0])),
            )

        if history.converged(options.max_tol):
            break

    return gamma, history
