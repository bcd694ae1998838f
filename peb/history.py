"""Iteration history and cross-call noise smoothing.

``History`` records one entry per iteration of both learning stages of a single
``learning`` call. Storage is allocated up front with a fixed capacity and
appending past it raises instead of overwriting older entries.

``LambdaSmoother`` is the FIFO of recently converged noise powers owned by a
``PEB`` instance; it survives across calls and damps jitter of the noise
estimate on streaming data.
"""

from __future__ import annotations

from typing import Any

import numpy as np

GLOBAL_STAGE = "global"
PRUNING_STAGE = "pruning"


class HistoryOverflowError(RuntimeError):
    """Raised when more iterations are recorded than the history can hold."""


class History:
    """Append-only record of ``(lambda, gamma_F, logE, stage)`` per iteration."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = int(capacity)
        self._lambda = np.full(self.capacity, np.nan)
        self._gamma_F = np.full(self.capacity, np.nan)
        self._logE = np.full(self.capacity, np.nan)
        self._stage: list[str] = []
        self.pointer = 0

    def __len__(self) -> int:
        return self.pointer

    def append(self, lam: float, gamma_F: float, logE: float, stage: str) -> None:
        if self.pointer >= self.capacity:
            raise HistoryOverflowError(
                f"History is full ({self.capacity} records). "
                f"Increase buffer_size or lower max_iter."
            )
        i = self.pointer
        self._lambda[i] = lam
        self._gamma_F[i] = gamma_F
        self._logE[i] = logE
        self._stage.append(stage)
        self.pointer += 1

    @property
    def lambda_(self) -> np.ndarray:
        return self._lambda[: self.pointer].copy()

    @property
    def gamma_F(self) -> np.ndarray:
        return self._gamma_F[: self.pointer].copy()

    @property
    def logE(self) -> np.ndarray:
        return self._logE[: self.pointer].copy()

    @property
    def stage(self) -> list[str]:
        return list(self._stage)

    @property
    def last_logE(self) -> float:
        if self.pointer == 0:
            raise IndexError("History is empty")
        return float(self._logE[self.pointer - 1])

    def count(self, stage: str) -> int:
        return self._stage.count(stage)

    def improvement(self) -> float:
        """Signed change of the log-evidence over the last iteration."""
        if self.pointer < 2:
            return np.inf
        return float(self._logE[self.pointer - 1] - self._logE[self.pointer - 2])

    def converged(self, max_tol: float) -> bool:
        """
        ``logE[k] - logE[k-1] < max_tol``.

        The difference is signed: a decrease of the evidence also stops the
        iteration.
        """
        return self.improvement() < max_tol

    def as_dict(self) -> dict[str, Any]:
        return {
            "lambda": self.lambda_,
            "gamma_F": self.gamma_F,
            "logE": self.logE,
            "stage": self.stage,
            "pointer": self.pointer,
        }


class LambdaSmoother:
    """Fixed-length FIFO of converged noise powers; missing entries are NaN."""

    def __init__(self, size: int = 100) -> None:
        if size < 1:
            raise ValueError(f"size must be positive, got {size}")
        self.buffer = np.full(int(size), np.nan)

    @property
    def size(self) -> int:
        return self.buffer.size

    def resize(self, size: int) -> None:
        """Change the FIFO length, keeping the newest entries."""
        if size == self.size:
            return
        kept = self.buffer[-size:] if size < self.size else self.buffer
        buffer = np.full(int(size), np.nan)
        buffer[buffer.size - kept.size :] = kept
        self.buffer = buffer

    def push(self, lam: float) -> float:
        """Push ``lam`` (dropping the oldest value) and return the smoothed noise power.

        The smoothed value replaces ``lam`` as the newest entry.
        """
        self.buffer = np.roll(self.buffer, -1)
        self.buffer[-1] = lam
        smoothed = float(np.mean(self.buffer[~np.isnan(self.buffer)]))
        self.buffer[-1] = smoothed
        return smoothed

    def reset(self) -> None:
        self.buffer[:] = np.nan
