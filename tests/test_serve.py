from __future__ import annotations

import pytest

from snapshot_agent import serve
from snapshot_agent.app.settings import Settings


def test_serve_starts_tls_listener(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    settings = Settings(tls_dir=str(tmp_path))
    captured: dict[str, object] = {}
    monkeypatch.setattr(serve, "get_settings", lambda: settings)
    monkeypatch.setattr(serve.uvicorn, "run", lambda app, **kwargs: captured.update(kwargs))

    assert serve.main(["--port", "9443"]) == 0

    assert captured["port"] == 9443
    assert captured["ssl_certfile"] == str(tmp_path / "server.crt")
    assert captured["ssl_keyfile"] == str(tmp_path / "server.key")
    assert (tmp_path / "server.crt").exists()


def test_serve_aborts_when_tls_provisioning_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(*_args, **_kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr(serve, "ensure_tls_material", broken)
    monkeypatch.setattr(serve.uvicorn, "run", lambda *a, **k: pytest.fail("must not bind"))

    assert serve.main([]) == 1
