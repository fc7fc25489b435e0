from __future__ import annotations
import asyncio, io, logging, mimetypes, os, uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

import aiohttp
from PIL import Image, ImageOps, UnidentifiedImageError

from _ledger import Ledger
from _sessions import PublishRequest
from _store import PersistenceError

log = logging.getLogger("telegraph-publisher")

TELEGRAM_FILE_API = "https://api.telegram.org/file"
DEFAULT_ORIGIN = "https://telegra.ph"

FileResolver = Callable[[str], Awaitable[str]]


class PublishError(Exception):
    stage = "publish"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.stage}: {self.args[0]}"


class FetchError(PublishError):
    stage = "fetch"


class TransformError(PublishError):
    stage = "transform"


class UploadError(PublishError):
    stage = "upload"


class MalformedUploadResponse(UploadError):
    pass


@dataclass(frozen=True)
class PublishedLink:
    url: str
    owner_id: int
    # None when the link exists but the ledger write failed
    total_requests: Optional[int] = None

    @property
    def recorded(self) -> bool:
        return self.total_requests is not None


def transform_image(data: bytes, max_dimension: int = 2560, quality: int = 90) -> bytes:
    """Bound the longest side, apply EXIF orientation and re-encode as JPEG without metadata."""
    try:
        with Image.open(io.BytesIO(data)) as src:
            img = ImageOps.exif_transpose(src)
            if img.mode not in ("RGB", "L"):
                if img.mode in ("RGBA", "LA", "P"):
                    rgba = img.convert("RGBA")
                    flat = Image.new("RGB", rgba.size, (255, 255, 255))
                    flat.paste(rgba, mask=rgba.split()[-1])
                    img = flat
                else:
                    img = img.convert("RGB")
            if max(img.size) > max_dimension:
                img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality, optimize=True)
            return out.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise TransformError(f"cannot re-encode image: {e}", e) from e


def parse_upload_response(payload, origin: str = DEFAULT_ORIGIN) -> str:
    """Hosting service answers [{"src": "/file/..."}]; anything else is malformed."""
    if isinstance(payload, dict) and payload.get("error"):
        raise UploadError(f"service error: {payload['error']}")
    if not isinstance(payload, list) or not payload:
        raise MalformedUploadResponse(f"unexpected response: {str(payload)[:200]}")
    first = payload[0]
    src = first.get("src") if isinstance(first, dict) else None
    if not isinstance(src, str) or not src.strip():
        raise MalformedUploadResponse(f"missing src in response: {str(payload)[:200]}")
    src = src.strip()
    if not src.startswith("/"):
        src = "/" + src
    return origin.rstrip("/") + src


class PublishPipeline:
    """
    fetch -> transform -> upload -> record. Every input arrives by value in
    PublishRequest, so the same instance serves immediate and scheduled publishes.
    """

    def __init__(self, http: aiohttp.ClientSession, ledger: Ledger, token: str,
                 resolve_file: FileResolver, origin: str = DEFAULT_ORIGIN,
                 fetch_timeout: float = 20, upload_timeout: float = 60,
                 max_dimension: int = 2560, transform: bool = True,
                 work_dir: str = "./data/artifacts"):
        self._http = http
        self.ledger = ledger
        self._token = token
        self._resolve_file = resolve_file
        self.origin = origin.rstrip("/")
        self.fetch_timeout = fetch_timeout
        self.upload_timeout = upload_timeout
        self.max_dimension = max_dimension
        self.transform = transform
        self.work_dir = work_dir

    async def fetch(self, file_id: str) -> Tuple[bytes, str]:
        try:
            file_path = await self._resolve_file(file_id)
        except Exception as e:
            raise FetchError(f"cannot resolve file: {e}", e) from e
        if not file_path:
            raise FetchError("file has no downloadable path")

        url = f"{TELEGRAM_FILE_API}/bot{self._token}/{file_path}"
        timeout = aiohttp.ClientTimeout(total=self.fetch_timeout)
        try:
            async with self._http.get(url, timeout=timeout) as resp:
                if resp.status != 200:
                    raise FetchError(f"file download returned HTTP {resp.status}")
                data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"file download failed: {e!r}", e) from e
        if not data:
            raise FetchError("file download returned no data")
        return data, file_path

    def prepare(self, data: bytes, file_path: str) -> Tuple[bytes, str, str]:
        """Returns (bytes, filename, content type) ready for upload."""
        if self.transform:
            return transform_image(data, self.max_dimension), "image.jpg", "image/jpeg"
        name = os.path.basename(file_path) or "image.jpg"
        ctype = mimetypes.guess_type(name)[0] or "image/jpeg"
        return data, name, ctype

    async def upload(self, data: bytes, filename: str = "image.jpg",
                     content_type: str = "image/jpeg") -> str:
        form = aiohttp.FormData()
        form.add_field("file", data, filename=filename, content_type=content_type)
        timeout = aiohttp.ClientTimeout(total=self.upload_timeout)
        try:
            async with self._http.post(f"{self.origin}/upload", data=form, timeout=timeout) as resp:
                if resp.status != 200:
                    raise UploadError(f"upload returned HTTP {resp.status}")
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise MalformedUploadResponse(f"response is not JSON: {e}", e) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UploadError(f"upload request failed: {e!r}", e) from e
        return parse_upload_response(payload, self.origin)

    async def publish(self, request: PublishRequest) -> PublishedLink:
        log.info("PUBLISH: start uid=%s sid=%s", request.owner_id, request.session_id)
        try:
            data, file_path = await self.fetch(request.file_id)
            # Pillow work off the event loop
            body, filename, ctype = await asyncio.to_thread(self.prepare, data, file_path)
            link = await self.upload(body, filename, ctype)
        except PublishError as e:
            log.warning("PUBLISH: failed uid=%s stage=%s err=%s", request.owner_id, e.stage, e.args[0])
            raise

        total = None
        try:
            total = self.ledger.record_publish(request.owner_id, link)
        except PersistenceError:
            log.exception("PUBLISH: link %s uploaded but ledger not saved uid=%s", link, request.owner_id)
        log.info("PUBLISH: done uid=%s link=%s", request.owner_id, link)
        return PublishedLink(link, request.owner_id, total)

    async def prepare_preview(self, file_id: str) -> str:
        """Write a transformed local copy for the confirmation preview; the caller owns the file."""
        data, _ = await self.fetch(file_id)
        body = await asyncio.to_thread(transform_image, data, self.max_dimension)
        os.makedirs(self.work_dir, exist_ok=True)
        path = os.path.join(self.work_dir, f"{uuid.uuid4().hex}.jpg")
        with open(path, "wb") as f:
            f.write(body)
        return path
