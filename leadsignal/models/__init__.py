from leadsignal.models.engager import LinkedInEngager
from leadsignal.models.enrichment import (
    Contact,
    EnrichmentSource,
    EnrichmentTask,
    OwnerType,
    TaskStatus,
)
from leadsignal.models.scan_run import TERMINAL_SCAN_STATUSES, ScanRun, ScanStatus
from leadsignal.models.signal import (
    EnrichmentStatus,
    Signal,
    SignalSource,
    SignalStatus,
    SignalType,
)
from leadsignal.models.source_item import SearchQuery, SourceItem

__all__ = [
    "Contact",
    "EnrichmentSource",
    "EnrichmentStatus",
    "EnrichmentTask",
    "LinkedInEngager",
    "OwnerType",
    "ScanRun",
    "ScanStatus",
    "SearchQuery",
    "Signal",
    "SignalSource",
    "SignalStatus",
    "SignalType",
    "SourceItem",
    "TaskStatus",
    "TERMINAL_SCAN_STATUSES",
]
