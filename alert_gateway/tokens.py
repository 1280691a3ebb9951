from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger("alert-gateway.tokens")

BEARER_PREFIX = "Bearer "
SCAN_SUFFIXES = {".json"}
UTF8_BOM = b"\xef\xbb\xbf"


class TokenError(RuntimeError):
    code = "token_error"
    status_code = 400


class InvalidAccount(TokenError):
    code = "invalid_account"


class TokenDirectoryUnreadable(TokenError):
    code = "token_dir_unreadable"
    status_code = 500


class TokenNotFound(TokenError):
    code = "token_not_found"


class MalformedToken(TokenError):
    code = "token_malformed"

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"bad token format in {source}: {reason}")
        self.source = source
        self.reason = reason


@dataclass(frozen=True)
class TokenRecord:
    account: str
    bearer: str
    instance_id: str
    team_ids: tuple[str, ...]


def normalize_bearer(raw: str) -> str:
    value = raw.strip()
    if value.lower().startswith(BEARER_PREFIX.lower()):
        return value
    return BEARER_PREFIX + value


def strip_bom(raw: bytes) -> str:
    if raw.startswith(UTF8_BOM):
        raw = raw[len(UTF8_BOM):]
    return raw.decode("utf-8").strip()


def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    return str(raw).strip()


def _fields_from_json(text: str, source: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedToken(source, f"invalid json ({exc.msg})") from exc

    if isinstance(data, list):
        objects = [item for item in data if isinstance(item, dict)]
        if not objects:
            raise MalformedToken(source, "json array holds no token object")
        data = objects[0]

    if not isinstance(data, dict):
        raise MalformedToken(source, "json must be an object or an array of objects")

    team_ids = data.get("teamIDs")
    if team_ids is None:
        team_ids = []
    if not isinstance(team_ids, list):
        raise MalformedToken(source, "teamIDs must be an array")

    return {
        "account": _as_text(data.get("ibmAccount")),
        "bearer": _as_text(data.get("iamToken")),
        "instance_id": _as_text(data.get("ibmInstanceID")),
        # positions are significant, so empty entries are kept as-is
        "team_ids": [_as_text(item) for item in team_ids],
    }


def _fields_from_line(text: str, source: str) -> dict[str, Any]:
    line = ""
    for candidate in text.splitlines():
        candidate = candidate.strip()
        if candidate and not candidate.startswith("#"):
            line = candidate
            break
    if not line:
        raise MalformedToken(source, "no data line")

    parts = [part.strip() for part in line.split(";")]
    parts = [part for part in parts if part]
    if len(parts) < 3:
        raise MalformedToken(source, "expected GUID;TOKEN;TEAMID...")

    return {
        "account": "",
        "bearer": parts[1],
        "instance_id": parts[0],
        "team_ids": parts[2:],
    }


def parse_token(raw: bytes, source: str, account: str = "") -> TokenRecord:
    try:
        text = strip_bom(raw)
    except UnicodeDecodeError as exc:
        raise MalformedToken(source, "not utf-8 text") from exc
    if not text:
        raise MalformedToken(source, "empty file")

    if text[0] in "{[":
        fields = _fields_from_json(text, source)
    else:
        fields = _fields_from_line(text, source)

    if not fields["account"]:
        fields["account"] = account.strip()

    missing = [name for name in ("account", "bearer", "instance_id") if not fields[name]]
    if not fields["team_ids"]:
        missing.append("team_ids")
    if missing:
        raise MalformedToken(source, f"missing {', '.join(missing)}")

    return TokenRecord(
        account=fields["account"],
        bearer=normalize_bearer(fields["bearer"]),
        instance_id=fields["instance_id"],
        team_ids=tuple(fields["team_ids"]),
    )


class ReadWriteLock:
    """Many concurrent readers, or a single writer.

    New readers wait while a writer is queued, so inserts are not starved by
    a steady stream of cache hits.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writing or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writing or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writing = True

    def release_write(self) -> None:
        with self._cond:
            self._writing = False
            self._cond.notify_all()


class TokenStore:
    """Resolves an account identifier to its credential record.

    Direct file names are tried first (``<account>.json``,
    ``ibmAccount-<account>.json``, ``token-<account>.json`` and the flat
    ``<account>/token`` file), then every ``.json`` file of the base directory
    is scanned for a matching ``ibmAccount``. Successful lookups are cached for
    the lifetime of the process. Two threads resolving the same account at
    once may both read the files; the last insert wins and both records are
    equal.
    """

    def __init__(self, base_dir: str | os.PathLike[str]) -> None:
        self.base_dir = Path(base_dir)
        self._cache: dict[str, TokenRecord] = {}
        self._lock = ReadWriteLock()

    def cached(self, account: str) -> TokenRecord | None:
        self._lock.acquire_read()
        try:
            return self._cache.get(account)
        finally:
            self._lock.release_read()

    def _remember(self, record: TokenRecord) -> None:
        self._lock.acquire_write()
        try:
            self._cache[record.account] = record
        finally:
            self._lock.release_write()

    def candidate_paths(self, account: str) -> list[Path]:
        # accounts that look like paths are only matched by scanning
        if account in {".", ".."} or "/" in account or "\\" in account:
            return []
        return [
            self.base_dir / f"{account}.json",
            self.base_dir / f"ibmAccount-{account}.json",
            self.base_dir / f"token-{account}.json",
            self.base_dir / account / "token",
        ]

    def _read(self, path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except (FileNotFoundError, NotADirectoryError, IsADirectoryError):
            return None
        except OSError as exc:
            logger.warning("token file unreadable", extra={"path": str(path), "error": exc.strerror})
            return None

    def resolve(self, account: str) -> TokenRecord:
        account = (account or "").strip()
        if not account:
            raise InvalidAccount("ibmAccount is empty")

        record = self.cached(account)
        if record is not None:
            return record

        record, malformed = self._from_direct_names(account)
        if record is None:
            record = self._from_scan(account)

        if record is None:
            if malformed is not None:
                raise malformed
            raise TokenNotFound(f"no token file found for ibmAccount={account} in {self.base_dir}")

        self._remember(record)
        logger.info("token resolved", extra={"ibmAccount": account, "instanceID": record.instance_id})
        return record

    def _from_direct_names(self, account: str) -> tuple[TokenRecord | None, MalformedToken | None]:
        first_malformed: MalformedToken | None = None

        for path in self.candidate_paths(account):
            raw = self._read(path)
            if raw is None:
                continue
            try:
                record = parse_token(raw, str(path), account=account)
            except MalformedToken as exc:
                logger.warning(
                    "malformed token file",
                    extra={"ibmAccount": account, "path": str(path), "reason": exc.reason},
                )
                first_malformed = first_malformed or exc
                continue

            if record.account != account:
                logger.info(
                    "token file belongs to another account",
                    extra={"ibmAccount": account, "path": str(path)},
                )
                continue
            return record, None

        return None, first_malformed

    def _from_scan(self, account: str) -> TokenRecord | None:
        try:
            with os.scandir(self.base_dir) as listing:
                entries = sorted(listing, key=lambda entry: entry.name)
        except OSError as exc:
            raise TokenDirectoryUnreadable(
                f"cannot read token directory {str(self.base_dir)!r}: {exc.strerror or exc}"
            ) from exc

        for entry in entries:
            if entry.is_dir():
                continue
            if Path(entry.name).suffix.lower() not in SCAN_SUFFIXES:
                continue

            raw = self._read(Path(entry.path))
            if raw is None:
                continue
            try:
                # no account default: a scanned file must name its own account
                record = parse_token(raw, entry.path)
            except MalformedToken as exc:
                logger.debug("skipping malformed token file", extra={"path": entry.path, "reason": exc.reason})
                continue

            if record.account == account:
                return record

        return None
