from ._validation import PEBOptions
from .api import PEB
from .evidence import ModelCovariance, data_covariance, log_evidence, model_covariance
from .history import History, HistoryOverflowError, LambdaSmoother
from .model import BlockModel, build_block_model
from .sim import equal_blocks, simulate_block_sources
from .stages import fit_global, init_hyperparameters, prune_blocks

__all__ = [
    "PEB",
    "BlockModel",
    "History",
    "HistoryOverflowError",
    "LambdaSmoother",
    "ModelCovariance",
    "PEBOptions",
    "build_block_model",
    "data_covariance",
    "equal_blocks",
    "fit_global",
    "init_hyperparameters",
    "log_evidence",
    "model_covariance",
    "prune_blocks",
    "simulate_block_sources",
]
