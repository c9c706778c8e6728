"""
GIB List Client - Downloads the registered user list archives

Sources:
- PK (mailbox) list:     GIB_PK_LIST_URL
- GB (sender unit) list: GIB_GB_LIST_URL

Each URL serves a ZIP archive holding one large XML record file.

Retry policy:
- Transient errors (timeouts, connection errors, 408, 429, 5xx) are retried
- Up to 3 attempts, exponential backoff starting at 2s (2s, 4s)
- Anything else (404, 403, ...) fails immediately with FatalFetchError

Usage:
    from services.gib_list_client import GibListClient

    with GibListClient() as client:
        paths = client.download_all(Path('/tmp/gib'), cancel_event)
        pk_zip = paths[OriginList.PK]
"""

import time
import logging
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

import requests

from constants import OriginList
from services.gib_errors import (
    FatalFetchError,
    GibFetchError,
    SyncCancelledError,
    TransientFetchError,
    raise_if_cancelled,
)
from services.gib_sync_config import (
    get_download_timeout_seconds,
    get_gb_list_url,
    get_pk_list_url,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

MAX_ATTEMPTS = 3
INITIAL_BACKOFF_SECONDS = 2.0
BACKOFF_MULTIPLIER = 2.0

RETRYABLE_STATUS_CODES = frozenset([408, 429, 500, 502, 503, 504])

CHUNK_SIZE = 1024 * 1024


def is_retryable_status(status_code: int) -> bool:
    """408, 429 and every 5xx are worth another attempt."""
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600


@dataclass
class DownloadResult:
    """Outcome of one origin list download."""
    origin: OriginList
    path: Path
    size_bytes: int
    attempts: int
    duration_seconds: float


class GibListClient:
    """
    HTTP client for the two GIB origin list archives.

    Features:
    - Streams the response to disk (the archives are large)
    - Retry with exponential backoff on transient errors only
    - Cooperative cancellation between chunks
    - Parallel download of both lists

    Example:
        client = GibListClient()
        result = client.download(OriginList.PK, Path('/tmp/pk_list.zip'))
        print(result.size_bytes)
    """

    def __init__(
        self,
        urls: Optional[Dict[OriginList, str]] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize GIB list client.

        Args:
            urls: Per-origin URL override. Defaults to GIB_PK_LIST_URL / GIB_GB_LIST_URL.
            timeout: Per-request timeout in seconds. Defaults to GIB_DOWNLOAD_TIMEOUT_SECONDS.
            session: Optional requests.Session (tests inject a mock)
            sleep: Backoff sleep function (tests inject a no-op)
        """
        self.urls = urls or {
            OriginList.PK: get_pk_list_url(),
            OriginList.GB: get_gb_list_url(),
        }
        self.timeout = timeout or get_download_timeout_seconds()
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": "GibRegistrySync/1.0 (registered user list sync)"
        })

    # =========================================================================
    # Single download
    # =========================================================================

    def download(
        self,
        origin: OriginList,
        destination: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> DownloadResult:
        """
        Download one origin list archive to destination, retrying transient errors.

        Raises:
            TransientFetchError: transient failure on the last attempt
            FatalFetchError: non-retryable failure
            SyncCancelledError: cancel_event was set
        """
        url = self.urls[origin]
        start_time = time.time()

        for attempt in range(MAX_ATTEMPTS):
            raise_if_cancelled(cancel_event, f"{origin.value} download")
            try:
                logger.info(f"Downloading {origin.value} list from {url} (attempt {attempt + 1}/{MAX_ATTEMPTS})")
                size = self._fetch_once(url, destination, cancel_event)

                duration = time.time() - start_time
                logger.info(f"Downloaded {origin.value} list: {size:,} bytes in {duration:.1f}s")
                return DownloadResult(
                    origin=origin,
                    path=destination,
                    size_bytes=size,
                    attempts=attempt + 1,
                    duration_seconds=duration,
                )

            except TransientFetchError as e:
                if attempt >= MAX_ATTEMPTS - 1:
                    logger.error(f"{origin.value} download failed after {MAX_ATTEMPTS} attempts: {e}")
                    raise
                backoff = INITIAL_BACKOFF_SECONDS * (BACKOFF_MULTIPLIER ** attempt)
                logger.warning(
                    f"{origin.value} download attempt {attempt + 1}/{MAX_ATTEMPTS} failed: {e}. "
                    f"Retrying in {backoff:.1f}s"
                )
                self._sleep(backoff)

        # Loop always returns or raises
        raise TransientFetchError(f"{origin.value} download failed")

    def _fetch_once(
        self,
        url: str,
        destination: Path,
        cancel_event: Optional[threading.Event],
    ) -> int:
        """One HTTP attempt. Classifies failures into transient and fatal."""
        try:
            response = self._session.get(url, stream=True, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientFetchError(f"Timeout fetching {url}: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientFetchError(f"Connection error fetching {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FatalFetchError(f"Request to {url} failed: {e}") from e

        try:
            status = response.status_code
            if status >= 400:
                message = f"GET {url} returned HTTP {status}"
                if is_retryable_status(status):
                    raise TransientFetchError(message, status_code=status)
                raise FatalFetchError(message, status_code=status)

            destination.parent.mkdir(parents=True, exist_ok=True)
            size = 0
            try:
                with open(destination, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise SyncCancelledError(f"Sync cancelled while downloading {url}")
                        if chunk:
                            f.write(chunk)
                            size += len(chunk)
            except (requests.exceptions.ChunkedEncodingError,
                    requests.exceptions.ConnectionError,
                    requests.exceptions.Timeout) as e:
                raise TransientFetchError(f"Stream interrupted for {url}: {e}") from e

            return size
        finally:
            response.close()

    # =========================================================================
    # Both lists
    # =========================================================================

    def download_all(
        self,
        target_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[OriginList, DownloadResult]:
        """
        Download both origin lists concurrently and wait for both.

        A failure in either download propagates after both finish; the
        cancel_event is set on failure so the sibling stops early.
        """
        cancel_event = cancel_event or threading.Event()
        results: Dict[OriginList, DownloadResult] = {}
        first_error: Optional[BaseException] = None

        with ThreadPoolExecutor(max_workers=len(OriginList), thread_name_prefix='gib-download') as pool:
            futures = {
                origin: pool.submit(
                    self.download,
                    origin,
                    target_dir / f"{origin.value.lower()}_list.zip",
                    cancel_event,
                )
                for origin in OriginList
            }
            for origin, future in futures.items():
                try:
                    results[origin] = future.result()
                except GibFetchError as e:
                    if first_error is None:
                        first_error = e
                    cancel_event.set()
                except SyncCancelledError as e:
                    if first_error is None:
                        first_error = e

        if first_error is not None:
            raise first_error

        return results

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self):
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def extract_first_xml(zip_path: Path, target_dir: Path, prefix: str) -> Path:
    """
    Extract the first *.xml entry of a ZIP archive into target_dir.

    Raises:
        FatalFetchError: archive is not a ZIP or holds no XML entry
    """
    try:
        with zipfile.ZipFile(zip_path) as archive:
            entry = next(
                (info for info in archive.infolist()
                 if not info.is_dir() and info.filename.lower().endswith('.xml')),
                None,
            )
            if entry is None:
                raise FatalFetchError(f"No XML file found in {zip_path.name}")

            extract_path = target_dir / f"{prefix}_{Path(entry.filename).name}"
            with archive.open(entry) as src, open(extract_path, 'wb') as dst:
                while True:
                    block = src.read(CHUNK_SIZE)
                    if not block:
                        break
                    dst.write(block)
    except zipfile.BadZipFile as e:
        raise FatalFetchError(f"{zip_path.name} is not a valid ZIP archive: {e}") from e

    logger.info(f"Extracted {entry.filename} from {zip_path.name}")
    return extract_path
