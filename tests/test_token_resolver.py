from __future__ import annotations

import stat
from pathlib import Path
from unittest.mock import Mock

import pytest

from gateway_wrapper.services.config_probe import ConfigurationProbe
from gateway_wrapper.services.token_service import (
    TOKEN_SOURCE_ENVIRONMENT,
    TOKEN_SOURCE_EXPLICIT,
    TOKEN_SOURCE_FILE,
    TOKEN_SOURCE_GENERATED,
    GatewayTokenResolver,
)
from gateway_wrapper.store.token_store import GatewayTokenStore, InvalidTokenFileError, is_valid_gateway_token


def _resolver(token_file: Path, *, env_override: str = "", logger: Mock | None = None) -> GatewayTokenResolver:
    return GatewayTokenResolver(
        store=GatewayTokenStore(token_file=token_file),
        env_override=env_override,
        logger=logger or Mock(),
    )


def test_environment_override_wins_and_is_not_persisted(tmp_path: Path) -> None:
    token_file = tmp_path / "gateway.token"
    token_file.write_text("a" * 64 + "\n", encoding="utf-8")
    resolver = _resolver(token_file, env_override="from-env")

    assert resolver.resolve() == "from-env"
    assert resolver.status_payload() == {"resolved": True, "source": TOKEN_SOURCE_ENVIRONMENT, "persisted": False}
    assert token_file.read_text(encoding="utf-8").strip() == "a" * 64


def test_generated_token_is_persisted_privately_and_survives_restart(tmp_path: Path) -> None:
    token_file = tmp_path / "state" / "gateway.token"

    first = _resolver(token_file).resolve()

    assert is_valid_gateway_token(first)
    assert token_file.read_text(encoding="utf-8").strip() == first
    assert stat.S_IMODE(token_file.stat().st_mode) == 0o600

    restarted = _resolver(token_file)
    assert restarted.resolve() == first
    assert restarted.status_payload()["source"] == TOKEN_SOURCE_FILE


def test_resolved_token_is_fixed_for_the_process(tmp_path: Path) -> None:
    logger = Mock()
    resolver = _resolver(tmp_path / "gateway.token", logger=logger)

    token = resolver.resolve()

    assert resolver.resolve() == token
    assert resolver.resolve("b" * 64) == token
    logger.warning.assert_called_once()


def test_explicit_token_is_adopted_when_nothing_resolved_yet(tmp_path: Path) -> None:
    token_file = tmp_path / "gateway.token"
    resolver = _resolver(token_file)

    assert resolver.resolve("c" * 64) == "c" * 64
    assert resolver.status_payload() == {"resolved": True, "source": TOKEN_SOURCE_EXPLICIT, "persisted": True}
    assert token_file.read_text(encoding="utf-8").strip() == "c" * 64


def test_explicit_token_survives_restart_unchanged(tmp_path: Path) -> None:
    token_file = tmp_path / "gateway.token"
    explicit = "0123456789ABCDEF" * 4

    first = _resolver(token_file).resolve(explicit)
    restarted_logger = Mock()
    restarted = _resolver(token_file, logger=restarted_logger)

    assert first == explicit.lower()
    assert restarted.resolve() == first
    assert restarted.status_payload()["source"] == TOKEN_SOURCE_FILE
    restarted_logger.warning.assert_not_called()


def test_malformed_explicit_token_is_ignored(tmp_path: Path) -> None:
    token_file = tmp_path / "gateway.token"
    logger = Mock()
    resolver = _resolver(token_file, logger=logger)

    token = resolver.resolve("my-shared-secret")

    assert token != "my-shared-secret"
    assert is_valid_gateway_token(token)
    assert resolver.status_payload()["source"] == TOKEN_SOURCE_GENERATED
    assert _resolver(token_file).resolve() == token
    logger.warning.assert_called_once()


def test_invalid_token_file_is_replaced(tmp_path: Path) -> None:
    token_file = tmp_path / "gateway.token"
    token_file.write_text("not-a-token\n", encoding="utf-8")
    logger = Mock()
    resolver = _resolver(token_file, logger=logger)

    token = resolver.resolve()

    assert token != "not-a-token"
    assert resolver.status_payload()["source"] == TOKEN_SOURCE_GENERATED
    assert token_file.read_text(encoding="utf-8").strip() == token
    logger.warning.assert_called_once()


def test_persistence_failure_warns_and_keeps_the_generated_token(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    logger = Mock()
    resolver = _resolver(blocker / "gateway.token", logger=logger)

    token = resolver.resolve()

    assert is_valid_gateway_token(token)
    assert resolver.resolve() == token
    assert resolver.status_payload() == {"resolved": True, "source": TOKEN_SOURCE_GENERATED, "persisted": False}
    logger.warning.assert_called()


def test_has_token_source_reflects_env_file_or_resolution(tmp_path: Path) -> None:
    token_file = tmp_path / "gateway.token"
    assert _resolver(token_file).has_token_source() is False
    assert _resolver(token_file, env_override="x").has_token_source() is True
    token_file.write_text("d" * 64, encoding="utf-8")
    assert _resolver(token_file).has_token_source() is True


def test_token_store_load_rejects_malformed_content(tmp_path: Path) -> None:
    store = GatewayTokenStore(token_file=tmp_path / "gateway.token")
    assert store.load() is None
    store.token_file.write_text("zz", encoding="utf-8")
    with pytest.raises(InvalidTokenFileError):
        store.load()


def test_configuration_probe_checks_the_file_every_time(tmp_path: Path) -> None:
    config_file = tmp_path / "clawdbot.json"
    probe = ConfigurationProbe(config_file=config_file)

    assert probe.is_configured() is False
    config_file.write_text("{}", encoding="utf-8")
    assert probe.is_configured() is True
    config_file.unlink()
    assert probe.is_configured() is False

    config_file.mkdir()
    assert probe.is_configured() is False
