"""High-level orchestration for the returns-intake pipeline."""

from .upload import UploadOrchestrator, build_destination_path, sniff_image
from .reconcile import RecordReconciler, merge_images, merge_notes
from .pipeline import PipelineCoordinator, PipelineState
from .export import export_images

__all__ = [
    "UploadOrchestrator",
    "build_destination_path",
    "sniff_image",
    "RecordReconciler",
    "merge_images",
    "merge_notes",
    "PipelineCoordinator",
    "PipelineState",
    "export_images",
]
