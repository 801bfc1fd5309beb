"""Command-line client for QRShare: upload, fetch and track shared files."""

from __future__ import annotations

import argparse
import json
import math
import mimetypes
import os
import random
import string
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlparse

import httpx

from cli.backoff import BackoffPolicy, call_with_retry, poll

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

DEVICE_FILE = ".qrshare-device"
HISTORY_FILE = ".qrshare-history.json"
DEVICE_ID_HEADER = "Device-Id"
PASSWORD_HEADER = "X-File-Password"
HISTORY_CAP = 10
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_WORKERS = 4
DEFAULT_SERVER = "http://localhost:5000"

_BASE36 = string.digits + string.ascii_lowercase
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def generate_device_id(rng: random.Random | None = None) -> str:
    """Return a fresh opaque device id of the form ``device_<9 base36 chars>``."""
    chooser = rng or random.SystemRandom()
    return "device_" + "".join(chooser.choice(_BASE36) for _ in range(9))


def load_device_id(state_dir: Path) -> str:
    """Read this machine's device id, creating and saving one on first use."""
    path = state_dir / DEVICE_FILE
    if path.exists():
        device_id = path.read_text(encoding="utf-8").strip()
        if device_id:
            return device_id
    device_id = generate_device_id()
    state_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id + "\n", encoding="utf-8")
    return device_id


def load_history(state_dir: Path) -> list[dict[str, Any]]:
    """Load the locally remembered uploads, most recent first."""
    path = state_dir / HISTORY_FILE
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return []
    if not isinstance(data, list):
        return []
    return [entry for entry in data if isinstance(entry, dict) and "id" in entry]


def save_history(state_dir: Path, entries: list[dict[str, Any]]) -> None:
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / HISTORY_FILE).write_text(json.dumps(entries, indent=2), encoding="utf-8")


def remember_upload(
    entries: list[dict[str, Any]], entry: dict[str, Any], cap: int = HISTORY_CAP
) -> list[dict[str, Any]]:
    """Put ``entry`` first, dropping an older copy of the same file."""
    return [entry, *(e for e in entries if e.get("id") != entry.get("id"))][:cap]


def reconcile_history(
    local: list[dict[str, Any]], server: list[dict[str, Any]], cap: int = HISTORY_CAP
) -> list[dict[str, Any]]:
    """Combine the server's device history with the local one.

    The server's order wins; local entries the server does not know about
    follow in their own order. Each file appears once and at most ``cap``
    entries are kept. Local-only fields such as ``url`` survive the merge.
    """
    local_by_id = {entry["id"]: entry for entry in local}
    merged: list[dict[str, Any]] = []
    seen: set[Any] = set()
    for entry in server:
        if entry["id"] in seen:
            continue
        seen.add(entry["id"])
        merged.append({**local_by_id.get(entry["id"], {}), **entry})
    for entry in local:
        if entry["id"] in seen:
            continue
        seen.add(entry["id"])
        merged.append(entry)
    return merged[:cap]


def is_transient(exc: Exception) -> bool:
    """Network failures and server-side errors are worth retrying; client errors are not."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


def error_detail(exc: httpx.HTTPStatusError) -> str:
    try:
        payload = exc.response.json()
    except ValueError:
        return exc.response.text or str(exc)
    detail = payload.get("detail") if isinstance(payload, dict) else None
    return str(detail) if detail else str(exc)


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    if (
        parsed.scheme == "http"
        and not allow_insecure_http
        and parsed.hostname not in _LOCALHOST_HOSTS
    ):
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )
    return normalized


class ShareClient:
    """Client for a QRShare server acting on behalf of one device."""

    def __init__(
        self,
        server_url: str,
        state_dir: Path,
        *,
        policy: BackoffPolicy | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.state_dir = state_dir
        self.device_id = load_device_id(state_dir)
        self.policy = policy or BackoffPolicy()
        self.sleep = sleep
        self.client = client or httpx.Client(base_url=self.server_url, timeout=60.0)
        self.client.headers[DEVICE_ID_HEADER] = self.device_id

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> ShareClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        def send() -> httpx.Response:
            resp = self.client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp

        return call_with_retry(send, self.policy, is_transient, self.sleep)

    # -- uploads ------------------------------------------------------------

    def upload(
        self,
        path: Path,
        password: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        workers: int = DEFAULT_WORKERS,
    ) -> dict[str, Any]:
        """Upload ``path`` and remember it locally. Large files go up in chunks."""
        if path.stat().st_size > chunk_size:
            result = self._upload_chunked(path, password, chunk_size, workers)
        else:
            result = self._upload_single(path, password)
        entry = {**result["file"], "url": result["download_url"]}
        save_history(self.state_dir, remember_upload(load_history(self.state_dir), entry))
        return result

    def _upload_single(self, path: Path, password: str | None) -> dict[str, Any]:
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        data = {"password": password} if password else {}

        def send() -> httpx.Response:
            with path.open("rb") as fh:
                resp = self.client.post(
                    "/api/files/upload", files={"file": (path.name, fh, mime)}, data=data
                )
            resp.raise_for_status()
            return resp

        result: dict[str, Any] = call_with_retry(
            send, self.policy, is_transient, self.sleep
        ).json()
        return result

    def _send_chunk(self, path: Path, index: int, total: int, chunk_size: int) -> None:
        with path.open("rb") as fh:
            fh.seek(index * chunk_size)
            payload = fh.read(chunk_size)
        data = {"chunk_index": str(index), "total_chunks": str(total), "original_name": path.name}
        mime_type = mimetypes.guess_type(path.name)[0]
        if mime_type:
            data["mime_type"] = mime_type
        self._request(
            "POST",
            "/api/files/upload-chunk",
            files={"chunk": (f"{path.name}.part{index}", payload, "application/octet-stream")},
            data=data,
        )

    def _upload_chunked(
        self, path: Path, password: str | None, chunk_size: int, workers: int
    ) -> dict[str, Any]:
        total = math.ceil(path.stat().st_size / chunk_size)
        self._send_chunks(path, range(total), total, chunk_size, workers)
        body: dict[str, Any] = {
            "original_name": path.name,
            "total_chunks": total,
            "mime_type": mimetypes.guess_type(path.name)[0],
        }
        if password:
            body["password"] = password
        try:
            return self._merge(body)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 409:
                raise
            missing = exc.response.json().get("missing", [])
            self._send_chunks(path, missing, total, chunk_size, workers)
            return self._merge(body)

    def _send_chunks(
        self, path: Path, indices: Iterable[int], total: int, chunk_size: int, workers: int
    ) -> None:
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = [
                pool.submit(self._send_chunk, path, index, total, chunk_size) for index in indices
            ]
            for future in futures:
                future.result()

    def _merge(self, body: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = self._request(
            "POST", "/api/files/merge-chunks", json=body
        ).json()
        return result

    # -- downloads ----------------------------------------------------------

    def info(self, stored_name: str) -> dict[str, Any]:
        result: dict[str, Any] = self._request(
            "GET", f"/api/files/info/{quote(stored_name, safe='')}"
        ).json()
        return result

    def download(self, stored_name: str, dest_dir: Path, password: str | None = None) -> Path:
        """Download a file into ``dest_dir`` under its original name."""
        meta = self.info(stored_name)
        target = dest_dir / Path(meta["original_name"]).name
        partial = target.with_name(f".{target.name}.partial")
        headers = {PASSWORD_HEADER: password} if password else {}
        url = f"/api/files/download/{quote(stored_name, safe='')}"

        def fetch() -> Path:
            with self.client.stream("GET", url, headers=headers) as resp:
                resp.raise_for_status()
                with partial.open("wb") as fh:
                    for block in resp.iter_bytes():
                        fh.write(block)
            os.replace(partial, target)
            return target

        dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            return call_with_retry(fetch, self.policy, is_transient, self.sleep)
        finally:
            partial.unlink(missing_ok=True)

    # -- history ------------------------------------------------------------

    def recent(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._request("GET", "/api/files/recent").json()
        return result

    def server_history(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._request(
            "GET", f"/api/files/recent/{quote(self.device_id, safe='')}"
        ).json()
        return result

    def history(self) -> list[dict[str, Any]]:
        """Reconcile local and server history, save it locally and return it."""
        merged = reconcile_history(load_history(self.state_dir), self.server_history())
        save_history(self.state_dir, merged)
        return merged

    def clear(self) -> None:
        """Clear this device's history on the server and locally."""
        self._request(
            "POST", "/api/files/clear-recent-history", json={"device_id": self.device_id}
        )
        save_history(self.state_dir, [])

    def watch(
        self, interval: float, iterations: int | None = None
    ) -> Iterator[list[dict[str, Any]]]:
        """Poll recent uploads and yield the ones not seen before."""
        seen: set[int] | None = None
        for files in poll(self.recent, interval, self.policy, is_transient, self.sleep, iterations):
            ids = {f["id"] for f in files}
            if seen is None:
                seen = ids
                continue
            new = [f for f in files if f["id"] not in seen]
            seen |= ids
            if new:
                yield new


def _print_file(entry: dict[str, Any]) -> None:
    lock = " [protected]" if entry.get("protected") else ""
    print(
        f"  {entry['stored_name']}  {entry['original_name']}  "
        f"{entry['size_bytes']} bytes  {entry['download_count']} downloads{lock}"
    )


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="qrshare",
        description="Share files between devices through a QRShare server",
    )
    parser.add_argument(
        "--server",
        "-s",
        default=os.environ.get("QRSHARE_SERVER", DEFAULT_SERVER),
        help="Server URL (default: $QRSHARE_SERVER or http://localhost:5000)",
    )
    parser.add_argument(
        "--dir", "-d", default="~/.qrshare", help="State directory (default: ~/.qrshare)"
    )
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers = parser.add_subparsers(dest="command")
    upload_p = subparsers.add_parser("upload", help="Upload a file and print its share link")
    upload_p.add_argument("path")
    upload_p.add_argument("--password", help="Protect the download with a password")
    upload_p.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    upload_p.add_argument("--workers", type=int, default=DEFAULT_WORKERS)

    download_p = subparsers.add_parser("download", help="Download a shared file")
    download_p.add_argument("stored_name")
    download_p.add_argument("--password")
    download_p.add_argument("--output", "-o", default=".", help="Destination directory")

    info_p = subparsers.add_parser("info", help="Show a shared file's metadata")
    info_p.add_argument("stored_name")

    subparsers.add_parser("history", help="Show this device's recent uploads")
    subparsers.add_parser("recent", help="Show the most recent uploads on the server")
    subparsers.add_parser("clear", help="Clear this device's recent history")

    watch_p = subparsers.add_parser("watch", help="Print new uploads as they appear")
    watch_p.add_argument("--interval", type=float, default=5.0)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    state_dir = Path(args.dir).expanduser()
    try:
        with ShareClient(server_url, state_dir) as client:
            if args.command == "upload":
                result = client.upload(
                    Path(args.path), args.password, args.chunk_size, args.workers
                )
                print(f"Uploaded {result['file']['original_name']}")
                print(f"  {result['download_url']}")
            elif args.command == "download":
                target = client.download(args.stored_name, Path(args.output), args.password)
                print(f"Saved {target}")
            elif args.command == "info":
                _print_file(client.info(args.stored_name))
            elif args.command == "history":
                for entry in client.history():
                    _print_file(entry)
            elif args.command == "recent":
                for entry in client.recent():
                    _print_file(entry)
            elif args.command == "clear":
                client.clear()
                print("Recent history cleared")
            elif args.command == "watch":
                for new_files in client.watch(args.interval):
                    for entry in new_files:
                        _print_file(entry)
    except httpx.HTTPStatusError as exc:
        print(f"Error: {error_detail(exc)} ({exc.response.status_code})")
        sys.exit(1)
    except httpx.TransportError as exc:
        print(f"Error: could not reach {server_url}: {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
