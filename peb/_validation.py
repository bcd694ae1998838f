"""Input validation and option handling for peb.

This module centralizes the checks run on entry to model construction,
``learning``, ``update`` and ``inference`` so that malformed input fails fast,
before any factorization or iteration starts.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True)
class PEBOptions:
    """Options controlling the two learning stages.

    Parameters
    ----------
    max_iter : int
        Iteration ceiling of each stage.
    verbose : bool
        Emit per-iteration diagnostics at INFO level.
    max_tol : float
        Convergence threshold on the increase of the log-evidence.
    buffer_size : int
        Capacity of the history log; also the length of the noise-smoothing FIFO.
    gamma_min : float
        Floor applied to the global source power during the global stage only.
    do_pruning : bool
        Run the per-block pruning stage after the global fit.
    smooth_lambda : bool
        Average the converged noise power over recent calls.
    """

    max_iter: int = 100
    verbose: bool = True
    max_tol: float = 1e-1
    buffer_size: int = 100
    gamma_min: float = 1.0
    do_pruning: bool = True
    smooth_lambda: bool = True


_OPTION_NAMES = tuple(f.name for f in dataclasses.fields(PEBOptions))


def _check_positive_int(value: Any, name: str, hint: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value!r}. {hint}")
    return int(value)


def _check_bool(value: Any, name: str) -> bool:
    if not isinstance(value, (bool, np.bool_)):
        raise ValueError(f"{name} must be a boolean, got {type(value).__name__}")
    return bool(value)


def _check_real(value: Any, name: str, *, nonnegative: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise ValueError(f"{name} must be a real number, got {type(value).__name__}")
    value = float(value)
    if not np.isfinite(value):
        raise ValueError(f"{name} must be finite, got {value}")
    if nonnegative and value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


def _validate_options(
    options: PEBOptions | Mapping[str, Any] | None = None,
    *,
    base: PEBOptions | None = None,
) -> PEBOptions:
    """Merge ``options`` over ``base`` and check every field.

    Parameters
    ----------
    options : PEBOptions, mapping or None
        A complete option set, a mapping of overrides, or ``None`` for ``base``.
    base : PEBOptions, optional
        Defaults the overrides are applied to.

    Returns
    -------
    PEBOptions
        Validated options.

    Raises
    ------
    ValueError
        On unknown option names, wrong types or out-of-range values.
    """
    base = base if base is not None else PEBOptions()

    if options is None:
        merged = base
    elif isinstance(options, PEBOptions):
        merged = options
    elif isinstance(options, Mapping):
        unknown = sorted(set(options) - set(_OPTION_NAMES))
        if unknown:
            raise ValueError(
                f"Unknown option(s) {unknown}. Valid options are {list(_OPTION_NAMES)}."
            )
        merged = dataclasses.replace(base, **dict(options))
    else:
        raise ValueError(
            f"options must be a PEBOptions, a mapping or None, got {type(options).__name__}"
        )

    return PEBOptions(
        max_iter=_check_positive_int(merged.max_iter, "max_iter", "Try max_iter=100."),
        verbose=_check_bool(merged.verbose, "verbose"),
        max_tol=_check_real(merged.max_tol, "max_tol"),
        buffer_size=_check_positive_int(
            merged.buffer_size, "buffer_size", "Try buffer_size=100."
        ),
        gamma_min=_check_real(merged.gamma_min, "gamma_min", nonnegative=True),
        do_pruning=_check_bool(merged.do_pruning, "do_pruning"),
        smooth_lambda=_check_bool(merged.smooth_lambda, "smooth_lambda"),
    )


def _as_float_array(A: Any, name: str) -> np.ndarray:
    try:
        arr = np.asarray(A, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} cannot be converted to numeric array: {e}") from e
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contains NaN or infinite values")
    return arr


def _validate_forward_matrix(H: Any, *, name: str = "H") -> np.ndarray:
    """Return ``H`` as a finite 2D float array."""
    if hasattr(H, "toarray"):
        H = H.toarray()
    H_arr = _as_float_array(H, name)
    if H_arr.ndim != 2 or 0 in H_arr.shape:
        raise ValueError(
            f"{name} must be a non-empty 2D (Ny x Nx) array, got shape {H_arr.shape}"
        )
    return H_arr


def _validate_precision_matrix(Delta: Any, Nx: int, *, name: str = "Delta") -> np.ndarray:
    """Return the prior precision as a finite (Nx x Nx) float array."""
    if hasattr(Delta, "toarray"):
        Delta = Delta.toarray()
    D_arr = _as_float_array(Delta, name)
    if D_arr.shape != (Nx, Nx):
        raise ValueError(
            f"{name} must have shape ({Nx}, {Nx}) to match the columns of H, "
            f"got {D_arr.shape}"
        )
    return D_arr


def _validate_blocks(blocks: Any, Nx: int, *, name: str = "blocks") -> list[np.ndarray]:
    """Normalize a block partition to a list of sorted integer index arrays.

    Parameters
    ----------
    blocks : array-like or sequence
        Either a boolean/0-1 matrix of shape (Nx, Ng) whose column k marks the
        members of block k, or a sequence of integer index arrays.
    Nx : int
        Number of source dimensions.

    Returns
    -------
    list[np.ndarray]
        One index array per block.
    """
    if isinstance(blocks, np.ndarray) and blocks.ndim == 2:
        if blocks.shape[0] != Nx:
            raise ValueError(
                f"{name} mask must have {Nx} rows (one per source), got {blocks.shape[0]}. "
                f"Pass a (Nx, Ng) mask or a list of index arrays."
            )
        if not np.all(np.isin(blocks, (0, 1))):
            raise ValueError(f"{name} mask must contain only 0/1 or boolean entries")
        index_sets = [np.flatnonzero(blocks[:, k]) for k in range(blocks.shape[1])]
    elif isinstance(blocks, Sequence) and not isinstance(blocks, (str, bytes)):
        index_sets = []
        for k, idx in enumerate(blocks):
            idx_arr = np.asarray(idx)
            if idx_arr.dtype == bool:
                if idx_arr.shape != (Nx,):
                    raise ValueError(
                        f"{name}[{k}] boolean mask must have length {Nx}, got {idx_arr.shape}"
                    )
                idx_arr = np.flatnonzero(idx_arr)
            elif idx_arr.size and not np.issubdtype(idx_arr.dtype, np.integer):
                raise ValueError(f"{name}[{k}] must contain integer indices")
            idx_arr = idx_arr.astype(np.intp).ravel()
            if idx_arr.size != np.unique(idx_arr).size:
                raise ValueError(f"{name}[{k}] contains duplicate indices")
            index_sets.append(np.sort(idx_arr))
    else:
        raise ValueError(
            f"{name} must be a (Nx, Ng) mask array or a sequence of index arrays, "
            f"got {type(blocks).__name__}"
        )

    if len(index_sets) == 0:
        raise ValueError(f"{name} must define at least one block")
    for k, idx in enumerate(index_sets):
        if idx.size == 0:
            raise ValueError(f"{name}[{k}] is empty; every block needs at least one source")
        if idx.min() < 0 or idx.max() >= Nx:
            raise ValueError(f"{name}[{k}] has indices outside [0, {Nx})")
    return index_sets


def _validate_observations(Y: Any, Ny: int, *, name: str = "Y") -> np.ndarray:
    """Return ``Y`` as a finite (Ny x Nt) array; a 1D vector becomes one column."""
    Y_arr = _as_float_array(Y, name)
    if Y_arr.ndim == 1:
        Y_arr = Y_arr[:, None]
    elif Y_arr.ndim != 2:
        raise ValueError(
            f"{name} must be 1D or 2D, got {Y_arr.ndim}D with shape {Y_arr.shape}"
        )
    if Y_arr.shape[0] != Ny:
        raise ValueError(
            f"{name} has {Y_arr.shape[0]} rows but the forward matrix has {Ny}. "
            f"Observations must be laid out as (Ny x Nt)."
        )
    if Y_arr.shape[1] < 1:
        raise ValueError(f"{name} must contain at least one sample (column)")
    return Y_arr


def _validate_hyperparameters(
    lambda0: Any,
    gamma0: Any,
    Ng: int,
) -> tuple[float | None, np.ndarray | None]:
    """Check optional initial hyperparameters.

    ``lambda0`` must be a positive scalar; ``gamma0`` a positive scalar or a
    length-``Ng`` vector, returned as a length-``Ng`` array.
    """
    lam = None
    if lambda0 is not None:
        lam = _check_real(lambda0, "lambda0")
        if lam <= 0:
            raise ValueError(f"lambda0 must be positive, got {lam}")

    gam = None
    if gamma0 is not None:
        gam = _as_float_array(gamma0, "gamma0")
        if gam.ndim == 0:
            gam = np.full(Ng, float(gam))
        else:
            gam = gam.ravel()
        if gam.size != Ng:
            raise ValueError(f"gamma0 must be a scalar or have length {Ng}, got {gam.size}")
        if np.any(gam <= 0):
            raise ValueError("gamma0 entries must be positive")
    return lam, gam
