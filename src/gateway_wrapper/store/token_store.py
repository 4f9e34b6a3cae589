from __future__ import annotations

import os
import re
import uuid
from pathlib import Path


_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def normalize_gateway_token(value: str | None) -> str | None:
    """Return the canonical lower-case form of a gateway token, ``None`` when malformed."""
    token = str(value or "").strip().lower()
    return token if _TOKEN_PATTERN.match(token) else None


def is_valid_gateway_token(value: str) -> bool:
    return normalize_gateway_token(value) is not None


class InvalidTokenFileError(RuntimeError):
    pass


class GatewayTokenStore:
    def __init__(self, *, token_file: Path) -> None:
        self.token_file = Path(token_file)

    def load(self) -> str | None:
        """Return the persisted token, ``None`` when absent.

        Raises ``InvalidTokenFileError`` when the file exists but does not hold
        a 64-character hex token.
        """
        try:
            raw = self.token_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        token = normalize_gateway_token(raw)
        if token is None:
            raise InvalidTokenFileError(f"Token file {self.token_file} does not contain a 64-character hex token.")
        return token

    def save(self, token: str) -> None:
        self.token_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.token_file.parent / f".{self.token_file.name}.{uuid.uuid4().hex}.tmp"
        fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(f"{token}\n")
            os.replace(tmp_path, self.token_file)
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass

    def exists(self) -> bool:
        try:
            return self.token_file.is_file()
        except OSError:
            return False
