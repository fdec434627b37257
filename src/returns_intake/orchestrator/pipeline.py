"""Per-form coordinator: decode, capture, upload and reconcile."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from ..capture.normalize import CaptureNormalizer, ImageSource
from ..capture.queue import CaptureQueue
from ..domain.errors import CaptureError, QueueError, ValidationError
from ..domain.fields import validate_submission
from ..domain.identifiers import extract_identifier
from ..domain.models import (
    CaptureItem,
    RecordVariant,
    ReturnRecord,
    SubmissionForm,
    UploadResult,
    UploadState,
    ValidatedSubmission,
)
from ..logging import get_logger
from .reconcile import RecordReconciler
from .upload import UploadOrchestrator

LOG = get_logger("orchestrator-pipeline")


class PipelineState(str, Enum):
    IDLE = "Idle"
    CAPTURING = "Capturing"
    QUEUED = "Queued"
    SUBMITTING = "Submitting"
    RECONCILED = "Reconciled"
    FAILED = "Failed"


class PipelineCoordinator:
    """State machine owning one capture queue and one form.

    A failed submission reverts the items it marked Uploaded back to Pending.
    Those items keep their stored reference, so the retry re-runs
    reconciliation with the same references instead of sending the bytes
    again.
    """

    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        reconciler: RecordReconciler,
        *,
        variant: RecordVariant = RecordVariant.OVERSTOCK,
        normalizer: Optional[CaptureNormalizer] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.reconciler = reconciler
        self.variant = variant
        self.normalizer = normalizer or CaptureNormalizer()
        self.queue = CaptureQueue()
        self.form = SubmissionForm()
        self.state = PipelineState.IDLE
        self.current_tag: Optional[str] = None
        self.last_error: Optional[BaseException] = None
        self.last_results: List[UploadResult] = []

    def _settle(self) -> None:
        if self.state is PipelineState.SUBMITTING:
            return
        if len(self.queue):
            self.state = PipelineState.QUEUED
        elif self.state is not PipelineState.CAPTURING:
            self.state = PipelineState.IDLE

    def _ensure_not_submitting(self) -> None:
        if self.state is PipelineState.SUBMITTING:
            raise QueueError("A submission is in progress")

    # --------------- capture ---------------
    def start_capture(self) -> None:
        self._ensure_not_submitting()
        self.state = PipelineState.CAPTURING
        LOG.debug("Capture started")

    def handle_decoded(self, text: str, frame: Optional[ImageSource] = None) -> Optional[str]:
        """Consume one decoder payload.

        A recognised identifier becomes the current tag; with a frame it is
        captured and queued straight away. Text without an identifier is
        ignored and None is returned.
        """
        identifier = extract_identifier(text)
        if identifier is None:
            LOG.debug("Decoded payload carries no identifier")
            return None
        self.current_tag = identifier
        LOG.info(f"Detected identifier {identifier}")
        if frame is not None:
            self.capture_photo(frame, tag=identifier)
        return identifier

    def capture_photo(self, source: ImageSource, *, tag: Optional[str] = None) -> CaptureItem:
        self._ensure_not_submitting()
        tag = tag or self.current_tag
        if not tag:
            raise CaptureError("No barcode detected. Please scan a barcode first.")
        item = self.normalizer.capture_item(source, tag)
        self.queue.add(item)
        self._settle()
        return item

    def add_placeholder(self) -> CaptureItem:
        self._ensure_not_submitting()
        item = self.queue.add(self.normalizer.placeholder_item())
        self._settle()
        return item

    def remove_item(self, item_id: str) -> CaptureItem:
        self._ensure_not_submitting()
        item = self.queue.remove(item_id)
        self._settle()
        return item

    # --------------- submit ---------------
    def validate_form(self, form: Optional[SubmissionForm] = None) -> ValidatedSubmission:
        if form is not None:
            self.form = form
        submission = validate_submission(self.form, self.variant)
        if not len(self.queue):
            raise ValidationError("images", "Please add at least one image")
        return submission

    async def submit(self, form: Optional[SubmissionForm] = None) -> ReturnRecord:
        self._ensure_not_submitting()
        submission = self.validate_form(form)
        self.state = PipelineState.SUBMITTING
        self.last_error = None
        marked: List[str] = []
        ordered = list(reversed(self.queue.pending()))
        to_send = [it for it in ordered if it.stored is None]
        try:
            self.queue.set_state([it.id for it in to_send], UploadState.UPLOADING)
            results = await self.orchestrator.upload_all(to_send, folder_key=str(submission.invoice_number))
            self.last_results = results
            for result in results:
                if result.ok:
                    self.queue.mark_uploaded(result)
                    marked.append(result.item_id)
                else:
                    self.queue.set_state([result.item_id], UploadState.PENDING)
            for item in ordered:
                if item.stored is not None and item.upload_state is UploadState.PENDING:
                    self.queue.mark_uploaded(item.stored)
                    marked.append(item.id)

            references = [
                it.stored.public_reference
                for it in ordered
                if it.upload_state is UploadState.UPLOADED and it.stored is not None
            ]
            if not references:
                raise ValidationError("images", "No images were uploaded successfully")
            failed = len(ordered) - len(references)
            if failed:
                LOG.warning(f"{failed} image(s) failed to upload; continuing with {len(references)}")

            record = await self.reconciler.reconcile(submission, references)
        except BaseException as exc:
            stuck = [it.id for it in self.queue if it.upload_state is UploadState.UPLOADING]
            self.queue.set_state(stuck, UploadState.PENDING)
            self.queue.unmark_uploaded(marked)
            self.last_error = exc
            self.state = PipelineState.FAILED
            LOG.error(f"Submission for invoice {submission.invoice_number} failed: {exc}")
            raise

        self.queue.clear()
        self.form = SubmissionForm()
        self.current_tag = None
        self.state = PipelineState.RECONCILED
        return record

    def reset(self) -> None:
        self._ensure_not_submitting()
        self.queue.clear()
        self.form = SubmissionForm()
        self.current_tag = None
        self.last_error = None
        self.last_results = []
        self.state = PipelineState.IDLE
