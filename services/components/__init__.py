"""
Pipeline components used by the PipelineOrchestrator.
Provides AttachmentResolver, ActionMapBuilder, ImageDownloader, SyncExecutor and OrphanCleaner.
"""
from services.components.attachment_resolver import AttachmentResolver
from services.components.action_map_builder import ActionMapBuilder
from services.components.image_downloader import ImageDownloader
from services.components.sync_executor import SyncExecutor
from services.components.orphan_cleaner import OrphanCleaner

__all__ = [
    "AttachmentResolver",
    "ActionMapBuilder",
    "ImageDownloader",
    "SyncExecutor",
    "OrphanCleaner",
]
