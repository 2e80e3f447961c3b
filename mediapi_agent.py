#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote

import requests
from apscheduler.triggers.cron import CronTrigger


DEFAULT_CONFIG = {
    "core_api_base": "",
    "device_auth_token": "",
    "device_id": "",
    "media_dir": "./media",
    "state_dir": "",
    "schedule_file": "",
    "status_file": "",
    "max_parallel_downloads": 3,
    "request_timeout_sec": 30,
    "download_timeout_sec": 300,
    "sync_enabled": True,
    "idle_interval_sec": 3600,
    "scheduler_tick_sec": 60,
    "rest_service_unit": "play.video.service",
    "crontab_user": "pi",
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
}

TMP_SUFFIX = ".tmp"
ERROR_BODY_LIMIT = 512
HASH_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 1024 * 256
MINUTES_PER_DAY = 24 * 60

REST_STOP_MARKER = "# MEDIA_PI_REST STOP"
REST_START_MARKER = "# MEDIA_PI_REST START"

TIME_OF_DAY_RE = re.compile(r"^([0-9]{1,2}):([0-9]{2})$")
CRON_NUMBER_RE = re.compile(r"^[0-9]{1,2}$")


class AgentError(Exception):
    pass


class ConfigurationError(AgentError):
    pass


class SyncError(AgentError):
    pass


class FetchError(SyncError):
    pass


class DownloadError(SyncError):
    pass


class SizeMismatchError(DownloadError):
    pass


class HashMismatchError(DownloadError):
    pass


class DownloadIOError(DownloadError):
    pass


class DownloadHTTPError(DownloadError):
    pass


class SyncFailedError(SyncError):
    def __init__(self, errors: List[Exception]) -> None:
        self.errors = list(errors)
        super().__init__("sync errors: " + "; ".join(str(err) for err in self.errors))


class AlreadyInProgress(SyncError):
    pass


class SyncCancelled(SyncError):
    pass


class InvalidFilename(AgentError, ValueError):
    pass


class InvalidTimeFormat(AgentError, ValueError):
    pass


class OverlapError(AgentError, ValueError):
    pass


class CrontabError(AgentError):
    pass


class CancelToken:
    """Cooperative cancellation flag shared by a sync and everything it calls.

    A token created with a parent is cancelled together with the parent.
    Callbacks run once, on the thread that cancels; they are used to close
    HTTP responses so that blocked reads return promptly.
    """

    def __init__(self, parent: Optional["CancelToken"] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._parent = parent
        if parent is not None:
            parent.add_callback(self.cancel)

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logging.warning("Cancel callback failed: %s", exc)

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def detach(self) -> None:
        if self._parent is not None:
            self._parent.remove_callback(self.cancel)
            self._parent = None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelled("sync cancelled")


def load_config(path: str) -> Dict:
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(abs_path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config must be a JSON object: {path}")
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(data)
    config_dir = os.path.dirname(abs_path)
    for key in ("media_dir", "state_dir", "schedule_file", "status_file", "log_file"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, value)
    return cfg


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def setup_logging(cfg: Dict) -> None:
    level = logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def media_dir(cfg: Dict) -> str:
    return os.path.abspath(cfg.get("media_dir") or DEFAULT_CONFIG["media_dir"])


def state_dir(cfg: Dict) -> str:
    configured = cfg.get("state_dir")
    if configured:
        return configured
    # Never inside the media directory: the garbage collector owns it.
    parent = os.path.dirname(media_dir(cfg).rstrip(os.sep)) or os.sep
    return os.path.join(parent, ".mediapi-state")


def schedule_path(cfg: Dict) -> str:
    return cfg.get("schedule_file") or os.path.join(state_dir(cfg), "sync.schedule.json")


def status_path(cfg: Dict) -> str:
    return cfg.get("status_file") or os.path.join(state_dir(cfg), "sync.status.json")


def load_json_file(path: str) -> Optional[Dict]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return None
    except Exception as exc:
        logging.warning("Failed to read state file %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        logging.warning("Ignoring state file %s: not a JSON object", path)
        return None
    return data


def write_json_file(path: str, data: Dict) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}{TMP_SUFFIX}"
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=True)
        os.replace(tmp_path, path)
    except Exception:
        remove_quietly(tmp_path)
        raise


def remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logging.warning("Failed to remove %s: %s", path, exc)


@dataclass(frozen=True)
class ManifestItem:
    id: str
    filename: str
    file_size_bytes: int
    sha256: str

    @classmethod
    def from_dict(cls, data: object) -> "ManifestItem":
        if not isinstance(data, dict):
            raise FetchError(f"malformed manifest entry: {data!r}")
        item_id = data.get("id")
        filename = data.get("filename")
        size = data.get("fileSizeBytes")
        digest = data.get("sha256")
        if isinstance(item_id, bool) or not isinstance(item_id, (str, int)) or str(item_id) == "":
            raise FetchError(f"manifest entry has invalid id: {item_id!r}")
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise FetchError(f"manifest entry {item_id} has invalid fileSizeBytes: {size!r}")
        if not isinstance(digest, str) or not digest.strip():
            raise FetchError(f"manifest entry {item_id} has invalid sha256")
        return cls(
            id=str(item_id),
            # a missing or null filename is left for validate_filename to reject
            filename=filename if isinstance(filename, str) else "",
            file_size_bytes=size,
            sha256=digest.strip().lower(),
        )


def validate_filename(filename: object, media_root: str) -> str:
    """Return the cleaned relative path for a manifest filename.

    Manifest filenames come from the server and are only partially trusted,
    so anything that is not a single plain path component inside
    ``media_root`` raises InvalidFilename.
    """
    if not isinstance(filename, str) or not filename:
        raise InvalidFilename("empty filename")
    if "/" in filename or "\\" in filename:
        raise InvalidFilename(f"filename contains a path separator: {filename!r}")
    if "\x00" in filename:
        raise InvalidFilename(f"filename contains a NUL character: {filename!r}")
    if filename in (".", ".."):
        raise InvalidFilename(f"filename is a directory reference: {filename!r}")
    if os.path.isabs(filename) or os.path.normpath(filename) != filename:
        raise InvalidFilename(f"filename is not a clean relative path: {filename!r}")
    root = os.path.realpath(media_root)
    target = os.path.realpath(os.path.join(root, filename))
    if target == root or os.path.commonpath([root, target]) != root:
        raise InvalidFilename(f"filename escapes the media directory: {filename!r}")
    return filename


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_local(path: str, item: ManifestItem) -> bool:
    try:
        if not os.path.isfile(path):
            return False
        if os.path.getsize(path) != item.file_size_bytes:
            return False
        return sha256_file(path) == item.sha256.lower()
    except OSError:
        return False


def require_api_base(cfg: Dict) -> str:
    base = str(cfg.get("core_api_base") or "").strip().rstrip("/")
    if not base:
        raise ConfigurationError("core_api_base not configured")
    return base


def api_url(cfg: Dict, path: str) -> str:
    return f"{require_api_base(cfg)}{path}"


def auth_headers(cfg: Dict) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    token = str(cfg.get("device_auth_token") or "").strip()
    if token:
        headers["Authorization"] = f"Bearer {token}"
    device_id = str(cfg.get("device_id") or "").strip()
    if device_id:
        headers["X-Device-Id"] = device_id
    return headers


def response_excerpt(resp) -> str:
    try:
        text = resp.text or ""
    except Exception:
        return ""
    text = text.strip()
    if len(text) > ERROR_BODY_LIMIT:
        return text[:ERROR_BODY_LIMIT] + "..."
    return text


def _cancelled_during(token: Optional[CancelToken], exc: Exception) -> None:
    if token is not None and token.is_cancelled():
        raise SyncCancelled("sync cancelled") from exc


def fetch_manifest(cfg: Dict, token: Optional[CancelToken] = None, session=None) -> List[ManifestItem]:
    url = api_url(cfg, "/api/devicesync")
    http = session if session is not None else requests
    if token is not None:
        token.raise_if_cancelled()
    try:
        resp = http.get(
            url,
            headers=auth_headers(cfg),
            timeout=int(cfg.get("request_timeout_sec") or 30),
        )
    except Exception as exc:
        _cancelled_during(token, exc)
        raise FetchError(f"manifest request failed: {exc}") from exc
    try:
        if not 200 <= resp.status_code < 300:
            raise FetchError(f"backend returned status {resp.status_code}: {response_excerpt(resp)}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise FetchError(f"manifest is not valid JSON: {exc}") from exc
    finally:
        resp.close()
    if token is not None:
        token.raise_if_cancelled()
    if not isinstance(data, list):
        raise FetchError(f"manifest must be a JSON array, got {type(data).__name__}")
    return [ManifestItem.from_dict(entry) for entry in data]


def download_item(
    cfg: Dict,
    item: ManifestItem,
    dest_path: str,
    token: Optional[CancelToken] = None,
    session=None,
) -> None:
    url = api_url(cfg, f"/api/devicesync/{quote(item.id, safe='')}")
    http = session if session is not None else requests
    if token is not None:
        token.raise_if_cancelled()
    try:
        resp = http.get(
            url,
            headers=auth_headers(cfg),
            stream=True,
            timeout=int(cfg.get("download_timeout_sec") or 300),
        )
    except Exception as exc:
        _cancelled_during(token, exc)
        raise DownloadIOError(f"request for {item.filename} failed: {exc}") from exc

    tmp_path = f"{dest_path}{TMP_SUFFIX}"
    if token is not None:
        token.add_callback(resp.close)
    try:
        if not 200 <= resp.status_code < 300:
            raise DownloadHTTPError(
                f"backend returned status {resp.status_code} for {item.filename}: {response_excerpt(resp)}"
            )
        content_length = (resp.headers or {}).get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) != item.file_size_bytes:
            raise SizeMismatchError(
                f"size mismatch for {item.filename}: expected {item.file_size_bytes} bytes, "
                f"server announced {content_length}"
            )
        digest = hashlib.sha256()
        written = 0
        try:
            with open(tmp_path, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if token is not None:
                        token.raise_if_cancelled()
                    if not chunk:
                        continue
                    fh.write(chunk)
                    digest.update(chunk)
                    written += len(chunk)
        except SyncCancelled:
            raise
        except Exception as exc:
            _cancelled_during(token, exc)
            raise DownloadIOError(f"transfer of {item.filename} failed: {exc}") from exc
        if token is not None:
            token.raise_if_cancelled()
        if written != item.file_size_bytes:
            raise SizeMismatchError(
                f"size mismatch for {item.filename}: expected {item.file_size_bytes} bytes, got {written}"
            )
        actual = digest.hexdigest()
        if actual != item.sha256.lower():
            raise HashMismatchError(f"hash mismatch for {item.filename}: expected {item.sha256}, got {actual}")
        try:
            os.replace(tmp_path, dest_path)
        except OSError as exc:
            raise DownloadIOError(f"failed to publish {item.filename}: {exc}") from exc
    except Exception:
        remove_quietly(tmp_path)
        raise
    finally:
        if token is not None:
            token.remove_callback(resp.close)
        resp.close()


def collect_garbage(
    media_root: str,
    expected: Set[str],
    token: Optional[CancelToken] = None,
) -> Tuple[List[str], List[OSError]]:
    removed: List[str] = []
    errors: List[OSError] = []
    if not os.path.isdir(media_root):
        return removed, errors
    keep = {os.path.normpath(os.path.abspath(path)) for path in expected}
    for dirpath, _dirnames, filenames in os.walk(media_root):
        for name in filenames:
            if token is not None:
                token.raise_if_cancelled()
            if name.endswith(TMP_SUFFIX):
                continue
            path = os.path.normpath(os.path.abspath(os.path.join(dirpath, name)))
            if path in keep:
                continue
            if os.path.islink(path) or not os.path.isfile(path):
                continue
            try:
                os.remove(path)
            except OSError as exc:
                logging.warning("Failed to delete %s: %s", path, exc)
                errors.append(exc)
                continue
            logging.info("Garbage collected %s", path)
            removed.append(path)
    return removed, errors


def cleanup_temp_files(media_root: str, max_age_sec: int = 0) -> int:
    if not os.path.isdir(media_root):
        return 0
    now = time.time()
    removed = 0
    for dirpath, _dirnames, filenames in os.walk(media_root):
        for name in filenames:
            if not name.endswith(TMP_SUFFIX):
                continue
            path = os.path.join(dirpath, name)
            if max_age_sec > 0:
                try:
                    age = now - os.path.getmtime(path)
                except OSError:
                    age = max_age_sec + 1
                if age < max_age_sec:
                    continue
            try:
                os.remove(path)
                removed += 1
            except OSError as exc:
                logging.warning("Failed to delete temp file %s: %s", path, exc)
    return removed


def plan_sync_items(manifest: List[ManifestItem], media_root: str) -> List[Tuple[ManifestItem, str]]:
    planned: List[Tuple[ManifestItem, str]] = []
    seen: Set[str] = set()
    for item in manifest:
        try:
            relative = validate_filename(item.filename, media_root)
        except InvalidFilename as exc:
            logging.warning("Skipping manifest entry %s: %s", item.id, exc)
            continue
        if relative in seen:
            logging.warning("Skipping manifest entry %s: duplicate filename %s", item.id, relative)
            continue
        seen.add(relative)
        planned.append((item, os.path.join(media_root, relative)))
    return planned


def parse_time_of_day(value: object) -> Tuple[int, int]:
    if not isinstance(value, str):
        raise InvalidTimeFormat(f"invalid time format: {value!r} (expected HH:MM)")
    match = TIME_OF_DAY_RE.match(value.strip())
    if not match:
        raise InvalidTimeFormat(f"invalid time format: {value!r} (expected HH:MM)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidTimeFormat(f"time out of range: {value!r}")
    return hour, minute


def normalize_time_of_day(value: object) -> str:
    hour, minute = parse_time_of_day(value)
    return f"{hour:02d}:{minute:02d}"


def calculate_next_sync_time(times: Iterable[str], now: datetime) -> Optional[datetime]:
    next_time: Optional[datetime] = None
    for value in times:
        try:
            hour, minute = parse_time_of_day(value)
        except InvalidTimeFormat as exc:
            logging.warning("Skipping schedule entry: %s", exc)
            continue
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        if next_time is None or candidate < next_time:
            next_time = candidate
    return next_time


@dataclass
class SyncStatus:
    last_sync_time: Optional[str] = None
    ok: bool = False
    error: Optional[str] = None

    def to_dict(self, in_progress: bool = False) -> Dict[str, object]:
        return {
            "lastSyncTime": self.last_sync_time,
            "lastSyncOk": self.ok,
            "lastSyncError": self.error,
            "syncInProgress": in_progress,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SyncStatus":
        last_sync_time = data.get("lastSyncTime")
        error = data.get("lastSyncError")
        return cls(
            last_sync_time=last_sync_time if isinstance(last_sync_time, str) else None,
            ok=data.get("lastSyncOk") is True,
            error=error if isinstance(error, str) else None,
        )


class SyncService:
    """Owns the media cache: one sync at a time, its status and its schedule."""

    def __init__(self, cfg: Dict, session=None) -> None:
        self._cfg = cfg
        self._session = session
        self._lock = threading.Lock()
        self._sync_token: Optional[CancelToken] = None
        self._status = SyncStatus()
        self._schedule: List[str] = []
        self._scheduler_thread: Optional[threading.Thread] = None
        self._scheduler_token: Optional[CancelToken] = None
        self._wakeup = threading.Event()
        self._load_status()
        self._load_schedule()

    def _load_status(self) -> None:
        data = load_json_file(status_path(self._cfg))
        if data:
            self._status = SyncStatus.from_dict(data)

    def _load_schedule(self) -> None:
        data = load_json_file(schedule_path(self._cfg)) or {}
        raw_times = data.get("times") or []
        if not isinstance(raw_times, list):
            logging.warning("Ignoring sync schedule: times is not a list")
            return
        times: Set[str] = set()
        for value in raw_times:
            try:
                times.add(normalize_time_of_day(value))
            except InvalidTimeFormat as exc:
                logging.warning("Skipping persisted schedule entry: %s", exc)
        self._schedule = sorted(times)

    def trigger_sync(self, token: Optional[CancelToken] = None) -> None:
        with self._lock:
            if self._sync_token is not None:
                raise AlreadyInProgress("sync already in progress")
            sync_token = CancelToken(parent=token)
            self._sync_token = sync_token
        error: Optional[Exception] = None
        try:
            self._perform_sync(sync_token)
        except Exception as exc:
            error = exc
            raise
        finally:
            sync_token.detach()
            self._record_status(error)
            with self._lock:
                self._sync_token = None

    def is_sync_in_progress(self) -> bool:
        with self._lock:
            return self._sync_token is not None

    def cancel_sync(self) -> bool:
        with self._lock:
            token = self._sync_token
        if token is None:
            return False
        logging.info("Cancelling sync in progress")
        token.cancel()
        return True

    def get_sync_status(self) -> SyncStatus:
        with self._lock:
            status = self._status
            return SyncStatus(last_sync_time=status.last_sync_time, ok=status.ok, error=status.error)

    def _record_status(self, error: Optional[Exception]) -> None:
        status = SyncStatus(
            last_sync_time=iso_now(),
            ok=error is None,
            error=None if error is None else str(error),
        )
        with self._lock:
            self._status = status
        try:
            write_json_file(status_path(self._cfg), status.to_dict())
        except OSError as exc:
            logging.warning("Failed to persist sync status: %s", exc)

    def _perform_sync(self, token: CancelToken) -> None:
        root = media_dir(self._cfg)
        require_api_base(self._cfg)
        try:
            os.makedirs(root, exist_ok=True)
        except OSError as exc:
            raise SyncError(f"failed to create media directory {root}: {exc}") from exc
        orphaned = cleanup_temp_files(root)
        if orphaned:
            logging.info("Removed %d orphaned temp files", orphaned)

        manifest = fetch_manifest(self._cfg, token, self._session)
        logging.info("Manifest fetched: %d items", len(manifest))
        planned = plan_sync_items(manifest, root)

        downloaded, errors = self._sync_items(planned, token)
        token.raise_if_cancelled()

        expected = {dest for _item, dest in planned}
        removed, gc_errors = collect_garbage(root, expected, token)
        if gc_errors:
            logging.warning("Garbage collection finished with %d errors", len(gc_errors))
        if errors:
            raise SyncFailedError(errors)
        logging.info(
            "Sync completed: %d items, %d downloaded, %d removed",
            len(planned),
            downloaded,
            len(removed),
        )

    def _sync_items(self, planned: List[Tuple[ManifestItem, str]], token: CancelToken) -> Tuple[int, List[Exception]]:
        errors: List[Exception] = []
        downloaded = 0
        if not planned:
            return downloaded, errors
        workers = max(int(self._cfg.get("max_parallel_downloads") or 1), 1)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mediapi-download") as pool:
            futures = [(item, pool.submit(self._sync_item, item, dest, token)) for item, dest in planned]
            for item, future in futures:
                try:
                    if future.result():
                        downloaded += 1
                except DownloadError as exc:
                    logging.warning("Failed to sync %s: %s", item.filename, exc)
                    errors.append(exc)
                except SyncCancelled:
                    continue
        return downloaded, errors

    def _sync_item(self, item: ManifestItem, dest: str, token: CancelToken) -> bool:
        token.raise_if_cancelled()
        if verify_local(dest, item):
            logging.info("File %s is up to date", item.filename)
            return False
        logging.info("Downloading %s (%d bytes)", item.filename, item.file_size_bytes)
        download_item(self._cfg, item, dest, token, self._session)
        logging.info("Downloaded %s", item.filename)
        return True

    def get_schedule(self) -> List[str]:
        with self._lock:
            return list(self._schedule)

    def set_schedule(self, times: Iterable[str]) -> List[str]:
        if isinstance(times, str):
            raise InvalidTimeFormat("schedule must be a list of HH:MM values")
        normalized = sorted({normalize_time_of_day(value) for value in times})
        write_json_file(schedule_path(self._cfg), {"times": normalized})
        with self._lock:
            self._schedule = normalized
        self._wakeup.set()
        logging.info("Sync schedule updated: %s", ", ".join(normalized) or "none")
        return list(normalized)

    def start_scheduler(self, token: Optional[CancelToken] = None) -> bool:
        with self._lock:
            if self._scheduler_thread is not None and self._scheduler_thread.is_alive():
                return False
            scheduler_token = CancelToken(parent=token)
            scheduler_token.add_callback(self._wakeup.set)
            thread = threading.Thread(
                target=self._scheduler_loop,
                args=(scheduler_token,),
                name="mediapi-scheduler",
                daemon=True,
            )
            self._scheduler_token = scheduler_token
            self._scheduler_thread = thread
        thread.start()
        return True

    def stop_scheduler(self, timeout: float = 5.0) -> None:
        with self._lock:
            token = self._scheduler_token
            thread = self._scheduler_thread
            self._scheduler_token = None
            self._scheduler_thread = None
        if token is None:
            return
        token.cancel()
        token.detach()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def is_scheduler_running(self) -> bool:
        with self._lock:
            thread = self._scheduler_thread
        return thread is not None and thread.is_alive()

    def _scheduler_loop(self, token: CancelToken) -> None:
        logging.info("Sync scheduler started")
        idle = max(float(self._cfg.get("idle_interval_sec") or 3600), 1.0)
        tick = max(float(self._cfg.get("scheduler_tick_sec") or 60), 0.01)
        last_fired: Optional[datetime] = None
        while not token.is_cancelled():
            now = datetime.now()
            if last_fired is not None and now < last_fired:
                now = last_fired
            next_at = None
            if self._cfg.get("sync_enabled", True):
                next_at = calculate_next_sync_time(self.get_schedule(), now)
            if next_at is None:
                logging.info("No sync schedule configured; waiting for changes")
                woke = self._wakeup.wait(idle)
            else:
                logging.info("Next scheduled sync at %s", next_at.isoformat(timespec="minutes"))
                woke = self._wait_until(next_at, tick, token)
            if token.is_cancelled():
                break
            if woke:
                self._wakeup.clear()
                continue
            if next_at is None:
                continue
            last_fired = next_at
            self._run_scheduled_sync(token)
        logging.info("Sync scheduler stopped")

    def _wait_until(self, deadline: datetime, tick: float, token: CancelToken) -> bool:
        # Short waits keep the loop honest when the wall clock jumps (NTP at boot).
        while not token.is_cancelled():
            remaining = (deadline - datetime.now()).total_seconds()
            if remaining <= 0:
                return False
            if self._wakeup.wait(min(remaining, tick)):
                return True
        return True

    def _run_scheduled_sync(self, token: CancelToken) -> None:
        logging.info("Starting scheduled sync")
        try:
            self.trigger_sync(token)
        except AlreadyInProgress:
            logging.info("Scheduled sync skipped: a sync is already in progress")
        except SyncCancelled:
            logging.info("Scheduled sync cancelled")
        except AgentError as exc:
            logging.warning("Scheduled sync failed: %s", exc)
        except Exception:
            logging.exception("Scheduled sync crashed")


@dataclass(frozen=True)
class RestTimePair:
    """A daily window: the guarded service stops at ``start`` and starts again at ``stop``."""

    start: str
    stop: str

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start, "stop": self.stop}

    @classmethod
    def from_dict(cls, data: Dict) -> "RestTimePair":
        return cls(start=str(data.get("start") or ""), stop=str(data.get("stop") or ""))


def sanitize_cron_text(text: str) -> str:
    cleaned = "".join(" " if unicodedata.category(ch) == "Cc" else ch for ch in str(text))
    # cron turns an unescaped % in the command field into a newline
    cleaned = cleaned.replace("%", " ")
    return " ".join(cleaned.split())


def rest_commands(service_unit: str) -> Tuple[str, str]:
    unit = sanitize_cron_text(service_unit)
    if not unit or " " in unit:
        raise ConfigurationError(f"invalid rest service unit: {service_unit!r}")
    return f"sudo systemctl stop {unit}", f"sudo systemctl start {unit}"


def sanitize_rest_pairs(raw: Iterable[object]) -> List[RestTimePair]:
    pairs: List[RestTimePair] = []
    for entry in raw:
        if isinstance(entry, RestTimePair):
            pair = entry
        elif isinstance(entry, dict):
            pair = RestTimePair.from_dict(entry)
        else:
            raise InvalidTimeFormat(f"invalid rest window: {entry!r}")
        start = pair.start.strip()
        stop = pair.stop.strip()
        if not start or not stop:
            raise InvalidTimeFormat("every rest window needs both a start and a stop time")
        pairs.append(RestTimePair(start=start, stop=stop))
    return pairs


def minutes_of_day(value: str) -> int:
    hour, minute = parse_time_of_day(value)
    return hour * 60 + minute


def validate_rest_pairs(pairs: List[RestTimePair]) -> None:
    spans: List[Tuple[RestTimePair, int, int]] = []
    for pair in pairs:
        spans.append((pair, minutes_of_day(pair.start), minutes_of_day(pair.stop)))

    occupied = [False] * MINUTES_PER_DAY
    for pair, start, stop in spans:
        # start == stop would walk all 1440 minutes; reject it as empty instead
        if start == stop:
            raise OverlapError(f"rest window {pair.start}-{pair.stop} has zero length")
        minute = start
        while minute != stop:
            if occupied[minute]:
                raise OverlapError(f"rest window {pair.start}-{pair.stop} overlaps another window")
            occupied[minute] = True
            minute = (minute + 1) % MINUTES_PER_DAY


def split_crontab_lines(content: str) -> List[str]:
    if not content:
        return []
    lines = content.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def join_crontab_lines(lines: List[str]) -> str:
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def trim_trailing_empty_lines(lines: List[str]) -> List[str]:
    lines = list(lines)
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def split_cron_line(line: str) -> Optional[Tuple[List[str], str]]:
    fields = line.split()
    if len(fields) < 6:
        return None
    return fields[:5], " ".join(fields[5:])


def is_rest_command_line(line: str, command: str) -> bool:
    parts = split_cron_line(line)
    return parts is not None and parts[1] == command


def is_valid_cron_expression(expr: str) -> bool:
    try:
        CronTrigger.from_crontab(expr, timezone="UTC")
    except ValueError:
        return False
    return True


def parse_cron_command_time(line: str, command: str) -> Optional[str]:
    parts = split_cron_line(line)
    if parts is None:
        return None
    fields, line_command = parts
    if line_command != command:
        return None
    if not is_valid_cron_expression(" ".join(fields)):
        return None
    if not CRON_NUMBER_RE.match(fields[0]) or not CRON_NUMBER_RE.match(fields[1]):
        return None
    minute, hour = int(fields[0]), int(fields[1])
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def parse_rest_times(content: str, stop_command: str, start_command: str) -> List[RestTimePair]:
    lines = split_crontab_lines(content)
    partial: List[Dict[str, str]] = []

    def add_start(value: str) -> None:
        partial.append({"start": value})

    def add_stop(value: str) -> None:
        if partial and "stop" not in partial[-1]:
            partial[-1]["stop"] = value
        else:
            partial.append({"stop": value})

    idx = 0
    while idx < len(lines):
        marker = lines[idx].strip()
        if marker in (REST_STOP_MARKER, REST_START_MARKER):
            if idx + 1 < len(lines):
                if marker == REST_STOP_MARKER:
                    value = parse_cron_command_time(lines[idx + 1], stop_command)
                    if value is not None:
                        add_start(value)
                        idx += 2
                        continue
                else:
                    value = parse_cron_command_time(lines[idx + 1], start_command)
                    if value is not None:
                        add_stop(value)
                        idx += 2
                        continue
            idx += 1
            continue
        value = parse_cron_command_time(lines[idx], stop_command)
        if value is not None:
            add_start(value)
        else:
            value = parse_cron_command_time(lines[idx], start_command)
            if value is not None:
                add_stop(value)
        idx += 1

    return [
        RestTimePair(start=entry["start"], stop=entry["stop"])
        for entry in partial
        if "start" in entry and "stop" in entry
    ]


def filter_out_rest_entries(lines: List[str], stop_command: str, start_command: str) -> List[str]:
    result: List[str] = []
    idx = 0
    while idx < len(lines):
        marker = lines[idx].strip()
        if marker == REST_STOP_MARKER:
            if idx + 1 < len(lines) and is_rest_command_line(lines[idx + 1], stop_command):
                idx += 1
            idx += 1
            continue
        if marker == REST_START_MARKER:
            if idx + 1 < len(lines) and is_rest_command_line(lines[idx + 1], start_command):
                idx += 1
            idx += 1
            continue
        if not (is_rest_command_line(lines[idx], stop_command) or is_rest_command_line(lines[idx], start_command)):
            result.append(lines[idx])
        idx += 1
    return result


def build_rest_entries(pairs: List[RestTimePair], stop_command: str, start_command: str) -> List[str]:
    entries: List[str] = []
    for idx, pair in enumerate(pairs):
        start_hour, start_minute = parse_time_of_day(pair.start)
        stop_hour, stop_minute = parse_time_of_day(pair.stop)
        if idx > 0:
            entries.append("")
        entries.append(REST_STOP_MARKER)
        entries.append(f"{start_minute:02d} {start_hour:02d} * * * {stop_command}")
        entries.append(REST_START_MARKER)
        entries.append(f"{stop_minute:02d} {stop_hour:02d} * * * {start_command}")
    return entries


def collapse_blank_runs(lines: List[str]) -> List[str]:
    result: List[str] = []
    for line in lines:
        if not line.strip() and result and not result[-1].strip():
            continue
        result.append(line)
    return result


def render_rest_crontab(content: str, pairs: List[RestTimePair], stop_command: str, start_command: str) -> str:
    lines = filter_out_rest_entries(split_crontab_lines(content), stop_command, start_command)
    lines = trim_trailing_empty_lines(collapse_blank_runs(lines))
    entries = build_rest_entries(pairs, stop_command, start_command)
    if entries:
        if lines:
            lines.append("")
        lines.extend(entries)
    return join_crontab_lines(lines)


class RestTimeManager:
    """Reads and rewrites the rest-window block of a crontab.

    The crontab itself is reached only through ``read_func``/``write_func``,
    so the caller decides whose crontab is edited and how.
    """

    def __init__(
        self,
        read_func: Callable[[], str],
        write_func: Callable[[str], None],
        service_unit: str = DEFAULT_CONFIG["rest_service_unit"],
    ) -> None:
        self._read = read_func
        self._write = write_func
        self._lock = threading.Lock()
        self.stop_command, self.start_command = rest_commands(service_unit)

    def get_rest_windows(self) -> List[RestTimePair]:
        return parse_rest_times(self._read(), self.stop_command, self.start_command)

    def set_rest_windows(self, pairs: Iterable[object]) -> List[RestTimePair]:
        cleaned = sanitize_rest_pairs(pairs)
        validate_rest_pairs(cleaned)
        normalized = [
            RestTimePair(start=normalize_time_of_day(pair.start), stop=normalize_time_of_day(pair.stop))
            for pair in cleaned
        ]
        with self._lock:
            content = self._read()
            self._write(render_rest_crontab(content, normalized, self.stop_command, self.start_command))
        logging.info(
            "Rest windows updated: %s",
            ", ".join(f"{pair.start}-{pair.stop}" for pair in normalized) or "none",
        )
        return normalized


def crontab_reader(user: str) -> Callable[[], str]:
    def read() -> str:
        args = ["crontab", "-u", user, "-l"]
        try:
            result = subprocess.run(args, capture_output=True, text=True, check=False, timeout=20)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CrontabError(f"crontab -u {user} -l: {exc}") from exc
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            if "no crontab for" in output.lower():
                return ""
            raise CrontabError(f"crontab -u {user} -l exited with {result.returncode}: {output}")
        return result.stdout

    return read


def crontab_writer(user: str) -> Callable[[str], None]:
    def write(content: str) -> None:
        args = ["crontab", "-u", user, "-"]
        try:
            result = subprocess.run(args, input=content, capture_output=True, text=True, check=False, timeout=20)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CrontabError(f"crontab -u {user} -: {exc}") from exc
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise CrontabError(f"crontab -u {user} - exited with {result.returncode}: {output}")

    return write


def rest_time_manager(cfg: Dict) -> RestTimeManager:
    user = str(cfg.get("crontab_user") or DEFAULT_CONFIG["crontab_user"])
    return RestTimeManager(
        crontab_reader(user),
        crontab_writer(user),
        service_unit=str(cfg.get("rest_service_unit") or DEFAULT_CONFIG["rest_service_unit"]),
    )


def parse_rest_argument(value: str) -> RestTimePair:
    start, sep, stop = value.partition("-")
    if not sep:
        raise InvalidTimeFormat(f"invalid rest window {value!r} (expected HH:MM-HH:MM)")
    return RestTimePair(start=start.strip(), stop=stop.strip())


def install_signal_handlers(handler: Callable) -> Dict[int, object]:
    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    return previous


def restore_signal_handlers(previous: Dict[int, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def run_agent(service: SyncService) -> int:
    shutdown = CancelToken()

    def _handle(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        shutdown.cancel()

    previous = install_signal_handlers(_handle)
    service.start_scheduler(shutdown)
    try:
        while not shutdown.wait(1.0):
            pass
    finally:
        service.cancel_sync()
        service.stop_scheduler()
        restore_signal_handlers(previous)
    return 0


def run_once(service: SyncService) -> int:
    def _handle(sig, _frame):
        logging.info("Signal %s received, cancelling sync...", sig)
        service.cancel_sync()

    previous = install_signal_handlers(_handle)
    try:
        service.trigger_sync()
    except ConfigurationError as exc:
        logging.error("Sync not possible: %s", exc)
        return 2
    except SyncError as exc:
        logging.error("Sync failed: %s", exc)
        return 1
    finally:
        restore_signal_handlers(previous)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Media Pi content sync agent")
    parser.add_argument("--config", default="config.json", help="Path to config.json")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--once", action="store_true", help="Run a single sync and exit")
    action.add_argument("--set-schedule", nargs="*", metavar="HH:MM", help="Replace the daily sync times")
    action.add_argument("--show-status", action="store_true", help="Print last sync status and schedule")
    action.add_argument("--set-rest", nargs="*", metavar="HH:MM-HH:MM", help="Replace the rest windows")
    action.add_argument("--show-rest", action="store_true", help="Print the configured rest windows")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    setup_logging(cfg)

    if args.set_rest is not None or args.show_rest:
        manager = rest_time_manager(cfg)
        try:
            if args.set_rest is not None:
                pairs = manager.set_rest_windows([parse_rest_argument(value) for value in args.set_rest])
            else:
                pairs = manager.get_rest_windows()
        except (ValueError, CrontabError) as exc:
            logging.error("Rest windows: %s", exc)
            return 2
        print(json.dumps([pair.to_dict() for pair in pairs], indent=2))
        return 0

    service = SyncService(cfg)
    if args.set_schedule is not None:
        try:
            times = service.set_schedule(args.set_schedule)
        except InvalidTimeFormat as exc:
            logging.error("Schedule rejected: %s", exc)
            return 2
        print(json.dumps({"times": times}, indent=2))
        return 0
    if args.show_status:
        payload = {
            "status": service.get_sync_status().to_dict(service.is_sync_in_progress()),
            "schedule": service.get_schedule(),
        }
        print(json.dumps(payload, indent=2))
        return 0
    if args.once:
        return run_once(service)

    if not str(cfg.get("core_api_base") or "").strip():
        logging.warning("core_api_base not configured; scheduled syncs will fail until it is set.")
    return run_agent(service)


if __name__ == "__main__":
    raise SystemExit(main())
