from __future__ import annotations

from types import SimpleNamespace

import uvicorn

from core.config import AppConfig, DiscordConfig, FastApiConfig
from main import _build_api_server


def test_api_server_uses_configured_address() -> None:
    config = AppConfig(
        discord=DiscordConfig(token="x"),
        fastapi=FastApiConfig(enabled=True, host="127.0.0.1", port=3123),
    )

    server = _build_api_server(SimpleNamespace(), config)

    assert isinstance(server, uvicorn.Server)
    assert (server.config.host, server.config.port) == ("127.0.0.1", 3123)
    # Shutdown goes through should_exit; uvicorn's own signal handling is left alone.
    assert "install_signal_handlers" not in vars(server)
    assert server.should_exit is False
