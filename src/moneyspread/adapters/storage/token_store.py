from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import json
import os
from pathlib import Path
import tempfile
from typing import Any, Protocol, TextIO

from loguru import logger

ACCESS_TOKEN_KEY = "plaid_access_token"  # noqa: S105


class TokenStore(Protocol):
    """Where the current aggregator access token lives between syncs."""

    def get(self) -> str | None: ...

    def set(self, token: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryTokenStore:
    def __init__(self, token: str | None = None) -> None:
        self._token = token

    def get(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileTokenStore:
    """
    JSON file holding the access token under ``plaid_access_token``.

    - Writes are atomic via write-to-temp + os.replace().
    - Other keys in the file are preserved.
    - An unreadable file is treated as holding no token.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser().resolve()

    def get(self) -> str | None:
        token = self._read().get(ACCESS_TOKEN_KEY)
        return token if isinstance(token, str) and token else None

    def set(self, token: str) -> None:
        data = self._read()
        data[ACCESS_TOKEN_KEY] = token
        self._write(data)

    def clear(self) -> None:
        data = self._read()
        if data.pop(ACCESS_TOKEN_KEY, None) is None:
            return
        self._write(data)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("Token file {} is not valid JSON; ignoring it", self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning(
                "Token file {} does not hold an object; ignoring it", self.path
            )
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        with self._atomic_writer() as tmp_file:
            tmp_file.write(json.dumps(data, ensure_ascii=True, sort_keys=True))
        logger.debug("Wrote token file {}", self.path)

    @contextmanager
    def _atomic_writer(self) -> Iterator[TextIO]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            delete=False,
            dir=str(self.path.parent),
            prefix=".tmp",
        )
        try:
            try:
                yield tmp_file
            finally:
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
                tmp_file.close()
            os.replace(tmp_file.name, self.path)
        except Exception:
            if os.path.exists(tmp_file.name):
                os.unlink(tmp_file.name)
            raise
