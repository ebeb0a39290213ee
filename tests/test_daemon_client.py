"""Tests for the daemon client helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from lsptop.config import AliasStore, Config
from lsptop.daemon_client import call, probe, raise_for_frame, send_request
from lsptop.errors import ConnectionUnavailable, DaemonError, ErrorCode
from lsptop.frames import DaemonRequest, ErrorFrame, ResultFrame
from lsptop.server import DaemonServer


class TestRaiseForFrame:
    def test_result_passes_through(self) -> None:
        frame = ResultFrame(data=[1])
        assert raise_for_frame(frame) is frame

    def test_error_keeps_code(self) -> None:
        with pytest.raises(DaemonError) as exc_info:
            raise_for_frame(ErrorFrame(message="gone", code="SESSION_CRASHED"))
        assert exc_info.value.code is ErrorCode.SESSION_CRASHED
        assert str(exc_info.value) == "gone"

    def test_unknown_code(self) -> None:
        with pytest.raises(DaemonError) as exc_info:
            raise_for_frame(ErrorFrame(message="?", code="NEW_KIND"))
        assert exc_info.value.code is ErrorCode.INTERNAL_ERROR


class TestConnecting:
    async def test_probe_missing_socket(self, tmp_path: Path) -> None:
        assert not await probe(str(tmp_path / "none.sock"))

    async def test_send_without_daemon(self, tmp_path: Path) -> None:
        with pytest.raises(ConnectionUnavailable) as exc_info:
            await send_request(DaemonRequest(action="status"), str(tmp_path / "none.sock"))
        assert exc_info.value.code is ErrorCode.CONNECTION_UNAVAILABLE

    async def test_call_returns_data(self, config: Config, tmp_path: Path) -> None:
        server = DaemonServer(config, aliases=AliasStore(tmp_path / "aliases.yaml"))
        await server.start()
        try:
            status = await call(server.socket_path, "status")
            with pytest.raises(DaemonError) as exc_info:
                await call(server.socket_path, "hover", str(tmp_path), ["a.ts:1:1"])
        finally:
            await server.close()

        assert status["sessions"] == 0
        assert exc_info.value.code is ErrorCode.PROJECT_NOT_FOUND
