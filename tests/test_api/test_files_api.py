"""Integration tests for the file sharing API."""

from __future__ import annotations

import asyncio
import base64
import random
from typing import TYPE_CHECKING, Any

import pytest

from backend.config import Settings
from tests.conftest import create_test_client

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from httpx import AsyncClient

DEVICE = {"Device-Id": "device_abc"}


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(test_settings) as ac:
        yield ac


async def _upload(
    client: AsyncClient,
    name: str = "notes.txt",
    content: bytes = b"hello",
    mime: str = "text/plain",
    headers: dict[str, str] | None = None,
    password: str | None = None,
) -> dict[str, Any]:
    resp = await client.post(
        "/api/files/upload",
        files={"file": (name, content, mime)},
        data={"password": password} if password else {},
        headers=headers if headers is not None else DEVICE,
    )
    assert resp.status_code == 201, resp.text
    result: dict[str, Any] = resp.json()
    return result


class TestUpload:
    @pytest.mark.asyncio
    async def test_three_megabyte_upload_lands_in_device_history(
        self, client: AsyncClient
    ) -> None:
        payload = b"\x00\x01" * (3 * 1024 * 1024 // 2)
        result = await _upload(client, "video.mp4", payload, "video/mp4")
        file = result["file"]
        assert file["size_bytes"] == 3 * 1024 * 1024
        assert file["download_count"] == 0
        assert file["original_name"] == "video.mp4"
        assert file["protected"] is False
        assert "password_hash" not in file

        resp = await client.get("/api/files/recent/device_abc")
        assert resp.status_code == 200
        assert [f["id"] for f in resp.json()] == [file["id"]]

    @pytest.mark.asyncio
    async def test_response_has_link_and_qr_code(self, client: AsyncClient) -> None:
        result = await _upload(client)
        stored_name = result["file"]["stored_name"]
        assert result["download_url"] == f"http://test/api/files/download/{stored_name}"
        prefix = "data:image/png;base64,"
        assert result["qr_code"].startswith(prefix)
        assert base64.b64decode(result["qr_code"][len(prefix) :])[:4] == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_public_base_url_used_for_links(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"public_base_url": "https://qr.example.com/"})
        async with create_test_client(settings) as client:
            result = await _upload(client)
        assert result["download_url"].startswith("https://qr.example.com/api/files/download/")

    @pytest.mark.asyncio
    async def test_eleven_uploads_keep_ten_newest_first(self, client: AsyncClient) -> None:
        ids = [(await _upload(client, f"file-{i}.txt"))["file"]["id"] for i in range(11)]
        resp = await client.get("/api/files/recent/device_abc")
        assert [f["id"] for f in resp.json()] == list(reversed(ids))[:10]

    @pytest.mark.asyncio
    async def test_disallowed_type(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/files/upload",
            files={"file": ("run.sh", b"#!/bin/sh", "application/x-sh")},
            headers=DEVICE,
        )
        assert resp.status_code == 422
        assert resp.json()["kind"] == "validation_failure"
        assert (await client.get("/api/files/recent")).json() == []
        assert (await client.get("/api/files/recent/device_abc")).json() == []

    @pytest.mark.asyncio
    async def test_too_large(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"max_upload_size": 16, "max_chunk_size": 8})
        async with create_test_client(settings) as client:
            resp = await client.post(
                "/api/files/upload",
                files={"file": ("big.txt", b"x" * 32, "text/plain")},
                headers=DEVICE,
            )
            assert resp.status_code == 413
            assert resp.json()["kind"] == "validation_failure"
            assert list(settings.files_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_invalid_device_id(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/files/upload",
            files={"file": ("a.txt", b"x", "text/plain")},
            headers={"Device-Id": "not a device!"},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_anonymous_upload(self, client: AsyncClient) -> None:
        result = await _upload(client, headers={})
        recent = (await client.get("/api/files/recent")).json()
        assert [f["id"] for f in recent] == [result["file"]["id"]]


class TestChunkedUpload:
    async def _send_chunk(
        self, client: AsyncClient, index: int, total: int, data: bytes, name: str = "clip.mp4"
    ) -> dict[str, Any]:
        resp = await client.post(
            "/api/files/upload-chunk",
            files={"chunk": ("blob", data, "application/octet-stream")},
            data={"chunk_index": str(index), "total_chunks": str(total), "original_name": name},
            headers=DEVICE,
        )
        assert resp.status_code == 200, resp.text
        result: dict[str, Any] = resp.json()
        return result

    @pytest.mark.asyncio
    async def test_chunked_equals_single_shot(self, client: AsyncClient) -> None:
        payload = bytes(range(256)) * 40
        parts = [payload[i : i + 4096] for i in range(0, len(payload), 4096)]
        for index in reversed(range(len(parts))):
            ack = await self._send_chunk(client, index, len(parts), parts[index])
            assert ack["total_chunks"] == len(parts)
        assert ack["complete"] is True

        resp = await client.post(
            "/api/files/merge-chunks",
            json={"original_name": "clip.mp4", "total_chunks": len(parts)},
            headers=DEVICE,
        )
        assert resp.status_code == 201, resp.text
        merged = resp.json()["file"]
        single = (await _upload(client, "clip.mp4", payload, "video/mp4"))["file"]
        assert merged["size_bytes"] == single["size_bytes"] == len(payload)
        assert merged["mime_type"] == "video/mp4"

        for file in (merged, single):
            download = await client.get(f"/api/files/download/{file['stored_name']}")
            assert download.content == payload

    @pytest.mark.asyncio
    async def test_merge_with_missing_chunk(self, client: AsyncClient) -> None:
        await self._send_chunk(client, 0, 3, b"a")
        await self._send_chunk(client, 2, 3, b"c")
        resp = await client.post(
            "/api/files/merge-chunks",
            json={"original_name": "clip.mp4", "total_chunks": 3},
            headers=DEVICE,
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["kind"] == "incomplete_upload"
        assert body["missing"] == [1]
        assert (await client.get("/api/files/recent")).json() == []

        await self._send_chunk(client, 1, 3, b"b")
        resp = await client.post(
            "/api/files/merge-chunks",
            json={"original_name": "clip.mp4", "total_chunks": 3},
            headers=DEVICE,
        )
        assert resp.status_code == 201
        assert resp.json()["file"]["size_bytes"] == 3

    @pytest.mark.asyncio
    async def test_parallel_shuffled_chunks(self, client: AsyncClient) -> None:
        parts = [bytes([index]) * 1000 for index in range(12)]
        order = list(range(len(parts)))
        random.Random(3).shuffle(order)
        acks = await asyncio.gather(
            *(self._send_chunk(client, i, len(parts), parts[i]) for i in order)
        )
        assert sorted(ack["chunk_index"] for ack in acks) == list(range(len(parts)))
        assert max(ack["received"] for ack in acks) == len(parts)

        resp = await client.post(
            "/api/files/merge-chunks",
            json={"original_name": "clip.mp4", "total_chunks": len(parts)},
            headers=DEVICE,
        )
        assert resp.status_code == 201, resp.text
        stored_name = resp.json()["file"]["stored_name"]
        download = await client.get(f"/api/files/download/{stored_name}")
        assert download.content == b"".join(parts)

    @pytest.mark.asyncio
    async def test_chunk_mime_type_field(self, client: AsyncClient) -> None:
        fields = {"chunk_index": "0", "total_chunks": "1", "original_name": "IMG_0042"}
        chunk = {"chunk": ("blob", b"x", "application/octet-stream")}
        resp = await client.post("/api/files/upload-chunk", files=chunk, data=fields)
        assert resp.status_code == 422
        resp = await client.post(
            "/api/files/upload-chunk", files=chunk, data={**fields, "mime_type": "image/heic"}
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["complete"] is True

    @pytest.mark.asyncio
    async def test_chunks_over_upload_limit(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"max_upload_size": 10, "max_chunk_size": 8})
        async with create_test_client(settings) as client:
            await self._send_chunk(client, 0, 5, b"x" * 8)
            resp = await client.post(
                "/api/files/upload-chunk",
                files={"chunk": ("blob", b"x" * 8, "application/octet-stream")},
                data={"chunk_index": "1", "total_chunks": "5", "original_name": "clip.mp4"},
                headers=DEVICE,
            )
        assert resp.status_code == 413
        assert resp.json()["kind"] == "validation_failure"

    @pytest.mark.asyncio
    async def test_chunk_index_out_of_range(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/files/upload-chunk",
            files={"chunk": ("blob", b"x", "application/octet-stream")},
            data={"chunk_index": "5", "total_chunks": "2", "original_name": "clip.mp4"},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_password_protected_merge(self, client: AsyncClient) -> None:
        await self._send_chunk(client, 0, 1, b"secret", name="doc.pdf")
        resp = await client.post(
            "/api/files/merge-chunks",
            json={"original_name": "doc.pdf", "total_chunks": 1, "password": "pw"},
            headers=DEVICE,
        )
        assert resp.status_code == 201
        assert resp.json()["file"]["protected"] is True


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_streams_bytes_and_counts(self, client: AsyncClient) -> None:
        result = await _upload(client, "Report.pdf", b"%PDF-1.7 body", "application/pdf")
        stored_name = result["file"]["stored_name"]

        resp = await client.get(f"/api/files/download/{stored_name}")
        assert resp.status_code == 200
        assert resp.content == b"%PDF-1.7 body"
        assert resp.headers["content-type"] == "application/pdf"
        assert "Report.pdf" in resp.headers["content-disposition"]

        info = (await client.get(f"/api/files/info/{stored_name}")).json()
        assert info["download_count"] == 1

    @pytest.mark.asyncio
    async def test_unknown_file(self, client: AsyncClient) -> None:
        resp = await client.get("/api/files/download/missing-1-abcdef.txt")
        assert resp.status_code == 404
        assert resp.json() == {"detail": "File not found", "kind": "not_found"}
        assert (await client.get("/api/files/info/missing-1-abcdef.txt")).status_code == 404

    @pytest.mark.asyncio
    async def test_password_gate(self, client: AsyncClient) -> None:
        result = await _upload(client, "secret.txt", b"top secret", password="open-sesame")
        stored_name = result["file"]["stored_name"]
        assert result["file"]["protected"] is True

        resp = await client.get(f"/api/files/download/{stored_name}")
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Password required", "kind": "unauthorized"}

        resp = await client.get(
            f"/api/files/download/{stored_name}", headers={"X-File-Password": "wrong"}
        )
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Incorrect password"

        info = (await client.get(f"/api/files/info/{stored_name}")).json()
        assert info["download_count"] == 0

        resp = await client.get(
            f"/api/files/download/{stored_name}", headers={"X-File-Password": "open-sesame"}
        )
        assert resp.status_code == 200
        assert resp.content == b"top secret"

        resp = await client.get(
            f"/api/files/download/{stored_name}", params={"password": "open-sesame"}
        )
        assert resp.status_code == 200

        info = (await client.get(f"/api/files/info/{stored_name}")).json()
        assert info["download_count"] == 2


class TestHistoryEndpoints:
    @pytest.mark.asyncio
    async def test_recent_is_global_newest_first(self, client: AsyncClient) -> None:
        first = await _upload(client, "a.txt", headers={"Device-Id": "device_one"})
        second = await _upload(client, "b.txt", headers={"Device-Id": "device_two"})
        recent = (await client.get("/api/files/recent")).json()
        assert [f["id"] for f in recent] == [second["file"]["id"], first["file"]["id"]]

    @pytest.mark.asyncio
    async def test_recent_limit(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"recent_limit": 3})
        async with create_test_client(settings) as client:
            for i in range(5):
                await _upload(client, f"{i}.txt")
            recent = (await client.get("/api/files/recent")).json()
        assert len(recent) == 3

    @pytest.mark.asyncio
    async def test_unknown_device_history_is_empty(self, client: AsyncClient) -> None:
        resp = await client.get("/api/files/recent/device_nobody")
        assert resp.status_code == 200
        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_device_files(self, client: AsyncClient) -> None:
        a = (await _upload(client, "a.txt"))["file"]["id"]
        b = (await _upload(client, "b.txt"))["file"]["id"]
        resp = await client.post("/api/files/device-files", json={"file_ids": [a, 9999, b]})
        assert resp.status_code == 200
        assert [f["id"] for f in resp.json()] == [b, a]

    @pytest.mark.asyncio
    async def test_device_files_limit(self, client: AsyncClient) -> None:
        resp = await client.post("/api/files/device-files", json={"file_ids": list(range(101))})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_add_to_recent(self, client: AsyncClient) -> None:
        a = (await _upload(client, "a.txt"))["file"]["id"]
        b = (await _upload(client, "b.txt"))["file"]["id"]

        resp = await client.post("/api/files/add-to-recent/device_xyz", json={"file_id": a})
        assert resp.status_code == 200
        assert [f["id"] for f in resp.json()] == [a]

        resp = await client.post("/api/files/add-to-recent/device_xyz", json={"file_ids": [b, a]})
        assert [f["id"] for f in resp.json()] == [a, b]

    @pytest.mark.asyncio
    async def test_add_unknown_file_to_recent(self, client: AsyncClient) -> None:
        resp = await client.post("/api/files/add-to-recent/device_xyz", json={"file_id": 404})
        assert resp.status_code == 404
        assert resp.json()["kind"] == "not_found"
        assert (await client.get("/api/files/recent/device_xyz")).json() == []

    @pytest.mark.asyncio
    async def test_add_to_recent_needs_exactly_one_form(self, client: AsyncClient) -> None:
        resp = await client.post("/api/files/add-to-recent/device_xyz", json={})
        assert resp.status_code == 422
        resp = await client.post(
            "/api/files/add-to-recent/device_xyz", json={"file_id": 1, "file_ids": [1]}
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_clear_history_twice(self, client: AsyncClient) -> None:
        result = await _upload(client)
        for _ in range(2):
            resp = await client.post(
                "/api/files/clear-recent-history", json={"device_id": "device_abc"}
            )
            assert resp.status_code == 200
        assert (await client.get("/api/files/recent/device_abc")).json() == []
        info = await client.get(f"/api/files/info/{result['file']['stored_name']}")
        assert info.status_code == 200

    @pytest.mark.asyncio
    async def test_mark_all_read(self, client: AsyncClient) -> None:
        resp = await client.post("/api/files/mark-all-read")
        assert resp.status_code == 200
        assert resp.json() == {"message": "All files marked as read"}


class TestStorageLayout:
    @pytest.mark.asyncio
    async def test_blobs_land_in_files_dir(self, client: AsyncClient, tmp_path: Path) -> None:
        result = await _upload(client, "a.txt", b"abc")
        path = tmp_path / "storage" / "files" / result["file"]["stored_name"]
        assert path.read_bytes() == b"abc"
