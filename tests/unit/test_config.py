from __future__ import annotations

from upload_dispatcher.common.config import Settings


def test_defaults(monkeypatch) -> None:
    for name in ("API_PORT", "STORE_URL", "AUTH_MODE", "UPLOADER_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    s = Settings(_env_file=None)
    assert s.api_port == 5151
    assert s.store_url == "mem://collection/id"
    assert s.auth_mode == "none"
    assert s.uploader_provider == "gdrive"


def test_env_and_file_overrides(tmp_path, monkeypatch) -> None:
    token_file = tmp_path / "token"
    token_file.write_text("secret-token\n", encoding="utf-8")
    monkeypatch.setenv("STORE_URL", "sqlite:///tasks.db")
    monkeypatch.setenv("GDRIVE_ACCESS_TOKEN_FILE", str(token_file))

    s = Settings(_env_file=None)
    assert s.store_url == "sqlite:///tasks.db"
    assert s.gdrive_access_token == "secret-token"
