"""optledger: crash-safe ledger for optimization issues, review decisions and commit attribution."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("optledger")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from optledger.models import Collection, Issue
from optledger.store import IssueStore

__all__ = ["Collection", "Issue", "IssueStore", "__version__"]
