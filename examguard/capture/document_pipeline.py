"""
Document Capture Pipeline - collects answer pages and produces one artifact

Pages arrive from the file picker, the device camera, or are replaced wholesale
by a mobile upload. Display order is always ``order_index``; indices are never
reused, so removing a page does not reorder the others.
"""

import asyncio
import logging
import uuid
from typing import List, Optional

from ..collaborators import ArtifactApi
from ..errors import CaptureFailed, EmptyArtifact, PageNotFound, PipelineLocked, UnsupportedPageType, UploadFailed
from ..models.schemas import Page
from ..monitoring.camera_arbiter import CameraArbiter
from ..monitoring.video import StreamOpener, encode_jpeg, open_video_stream
from ..signals import SignalBus

logger = logging.getLogger(__name__)

PDF = "application/pdf"
JPEG = "image/jpeg"
PNG = "image/png"
ALLOWED_CONTENT_TYPES = {PDF, JPEG, PNG}


def sniff_content_type(blob: bytes) -> Optional[str]:
    """Identify a page blob from its magic bytes."""
    if blob.startswith(b"%PDF"):
        return PDF
    if blob.startswith(b"\xff\xd8\xff"):
        return JPEG
    if blob.startswith(b"\x89PNG\r\n\x1a\n"):
        return PNG
    return None


class DocumentCapturePipeline:
    def __init__(
        self,
        artifact_api: ArtifactApi,
        arbiter: CameraArbiter,
        camera_index: int = 0,
        jpeg_quality: int = 90,
        stream_opener: StreamOpener = open_video_stream,
    ):
        self.artifact_api = artifact_api
        self.arbiter = arbiter
        self.camera_index = camera_index
        self.jpeg_quality = jpeg_quality
        self.stream_opener = stream_opener
        self.signals = SignalBus("pipeline")

        self.locked = False
        self.artifact_ref: Optional[str] = None
        self._pages: List[Page] = []
        self._next_index = 0

    @property
    def pages(self) -> List[Page]:
        """Pages in display order."""
        return sorted(self._pages, key=lambda p: p.order_index)

    def __len__(self) -> int:
        return len(self._pages)

    # ============== Page set ==============

    def add_page(self, blob: bytes, content_type: Optional[str] = None, is_captured: bool = False) -> Page:
        if self.locked:
            raise PipelineLocked("Answer sheet already finalized; reset to replace it")

        content_type = (content_type or "").lower() or sniff_content_type(blob)
        if content_type == "image/jpg":
            content_type = JPEG
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise UnsupportedPageType(f"Unsupported page type: {content_type or 'unknown'}")

        page = Page(
            id=uuid.uuid4().hex,
            source=blob,
            content_type=content_type,
            order_index=self._next_index,
            is_captured=is_captured,
        )
        self._next_index += 1
        self._pages.append(page)
        self.signals.emit("page_added", page_id=page.id, order_index=page.order_index)
        return page

    def remove_page(self, page_id: str) -> None:
        if self.locked:
            raise PipelineLocked("Answer sheet already finalized; reset to replace it")
        for i, page in enumerate(self._pages):
            if page.id == page_id:
                del self._pages[i]
                self.signals.emit("page_removed", page_id=page_id)
                return
        raise PageNotFound(f"No page with id {page_id}")

    def reset(self) -> None:
        """Drop every page and the finalized artifact, and unlock."""
        self._pages.clear()
        self._next_index = 0
        self.locked = False
        self.artifact_ref = None
        self.signals.emit("reset")

    def restore(self, artifact_ref: str) -> None:
        """Adopt an artifact finalized in an earlier run of this attempt."""
        self._pages.clear()
        self.artifact_ref = artifact_ref
        self.locked = True

    # ============== Device camera ==============

    async def capture_via_device_camera(self) -> Page:
        """
        Photograph one page with the local camera.

        The arbiter pauses background monitoring before the stream is opened
        and resumes it once the stream has been released.
        """
        if self.locked:
            raise PipelineLocked("Answer sheet already finalized; reset to replace it")

        async with self.arbiter.foreground_capture():
            try:
                stream = await asyncio.to_thread(self.stream_opener, self.camera_index)
            except Exception as e:
                logger.error(f"Camera access failed: {e}")
                raise CaptureFailed("Camera is not available", cause=e) from e
            try:
                frame = stream.read()
            finally:
                stream.release()

        if frame is None:
            raise CaptureFailed("Camera returned no image")
        image = encode_jpeg(frame, self.jpeg_quality)
        return self.add_page(image, JPEG, is_captured=True)

    # ============== Finalize ==============

    async def finalize(self, required: bool = True) -> Optional[str]:
        """
        Turn the page set into a single uploaded document.

        A lone PDF is uploaded as is; anything else is sent for server-side
        assembly in ``order_index`` order. Once this succeeds the pipeline is
        locked until ``reset()``.
        """
        if self.locked:
            return self.artifact_ref

        pages = self.pages
        if not pages:
            if required:
                raise EmptyArtifact("Please upload your answer sheet before submitting")
            return None

        try:
            if len(pages) == 1 and pages[0].content_type == PDF:
                ref = await self.artifact_api.upload_single(pages[0].source, PDF)
            else:
                ref = await self.artifact_api.assemble_and_upload([p.source for p in pages])
        except Exception as e:
            logger.error(f"Answer sheet upload failed: {e}")
            raise UploadFailed("Failed to upload answer sheet", cause=e) from e

        self.artifact_ref = ref
        self.locked = True
        logger.info(f"Answer sheet finalized from {len(pages)} page(s): {ref}")
        self.signals.emit("finalized", artifact_ref=ref, page_count=len(pages))
        return ref
