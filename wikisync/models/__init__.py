# Data models
from wikisync.models.base import Base
from wikisync.models.page import Page, PageVersion
from wikisync.models.staging import PageMetaStaging
from wikisync.models.dirty import DirtyPage, DirtyReason, SyncPhase
from wikisync.models.content import Attribution, Vote, Revision
from wikisync.models.conflict import PageConflict

__all__ = [
    "Base", "Page", "PageVersion", "PageMetaStaging", "DirtyPage", "DirtyReason",
    "SyncPhase", "Attribution", "Vote", "Revision", "PageConflict",
]
