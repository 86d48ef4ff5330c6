from reels_factory.models.ledger import CreditAccount, LedgerEntry
from reels_factory.models.project import Project, ProjectEvent, SubJob

__all__ = ["CreditAccount", "LedgerEntry", "Project", "ProjectEvent", "SubJob"]
