"""Sample identity QC for genotyping arrays."""

from .config import QCConfig, load_config
from .errors import ConfigurationError, InputMismatchError, MarkerFitFailure
from .fingerprint import DonorGroups
from .runner import IdentityQC, QCReport

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "DonorGroups",
    "IdentityQC",
    "InputMismatchError",
    "MarkerFitFailure",
    "QCConfig",
    "QCReport",
    "load_config",
]
