"""
Tests for token file parsing and the token store.

Tests cover:
- Flat GUID;TOKEN;TEAMID... lines
- JSON object / array token files
- Direct file naming conventions and directory scan
- Read-through cache
"""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from alert_gateway.tokens import (
    InvalidAccount,
    MalformedToken,
    ReadWriteLock,
    TokenDirectoryUnreadable,
    TokenNotFound,
    TokenStore,
    parse_token,
)


def write_json(path, payload):
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def token_payload(account="acc-1", **overrides):
    payload = {
        "ibmAccount": account,
        "iamToken": "secret-token",
        "ibmInstanceID": "guid-1",
        "teamIDs": ["d", "q", "pp", "prod", "dr"],
    }
    payload.update(overrides)
    return payload


# =============================================================
# TEST: parse_token
# =============================================================

class TestParseFlatLine:
    """Flat semicolon token files."""

    def test_positional_fields(self):
        record = parse_token(b"guid-1;tok-1;d;q;pp;prod;dr", "token", account="acc-1")

        assert record.account == "acc-1"
        assert record.instance_id == "guid-1"
        assert record.bearer == "Bearer tok-1"
        assert record.team_ids == ("d", "q", "pp", "prod", "dr")

    def test_skips_comments_and_blank_lines(self):
        raw = b"\n# GUID;TOKEN;TEAMS\n\n  guid-2 ; tok-2 ; team-a \nignored;line;x\n"
        record = parse_token(raw, "token", account="acc-2")

        assert record.instance_id == "guid-2"
        assert record.bearer == "Bearer tok-2"
        assert record.team_ids == ("team-a",)

    def test_existing_bearer_prefix_is_kept(self):
        record = parse_token(b"guid;bearer abc;t1", "token", account="acc")
        assert record.bearer == "bearer abc"

    def test_too_few_fields_is_malformed(self):
        with pytest.raises(MalformedToken):
            parse_token(b"guid;;tok", "token", account="acc")

    def test_only_comments_is_malformed(self):
        with pytest.raises(MalformedToken):
            parse_token(b"# nothing here\n\n", "token", account="acc")

    def test_flat_line_needs_an_account(self):
        with pytest.raises(MalformedToken):
            parse_token(b"guid;tok;team", "token")


class TestParseJson:
    """Structured JSON token files."""

    def test_object(self):
        raw = json.dumps(token_payload()).encode()
        record = parse_token(raw, "acc-1.json")

        assert record.account == "acc-1"
        assert record.bearer == "Bearer secret-token"
        assert record.instance_id == "guid-1"
        assert record.team_ids == ("d", "q", "pp", "prod", "dr")

    def test_utf8_bom_is_ignored(self):
        raw = b"\xef\xbb\xbf" + json.dumps(token_payload()).encode()
        assert parse_token(raw, "acc-1.json").account == "acc-1"

    def test_array_uses_first_object(self):
        raw = json.dumps([token_payload("first"), token_payload("second")]).encode()
        assert parse_token(raw, "tokens.json").account == "first"

    def test_missing_account_uses_default(self):
        payload = token_payload()
        del payload["ibmAccount"]
        record = parse_token(json.dumps(payload).encode(), "acc-9.json", account="acc-9")
        assert record.account == "acc-9"

    def test_all_empty_fields_is_malformed(self):
        raw = json.dumps({"ibmAccount": "", "iamToken": "", "ibmInstanceID": "", "teamIDs": []}).encode()
        with pytest.raises(MalformedToken):
            parse_token(raw, "empty.json", account="acc-1")

    def test_partial_record_is_malformed(self):
        raw = json.dumps(token_payload(iamToken="")).encode()
        with pytest.raises(MalformedToken) as excinfo:
            parse_token(raw, "acc-1.json")
        assert "bearer" in str(excinfo.value)

    def test_invalid_json_is_malformed(self):
        with pytest.raises(MalformedToken):
            parse_token(b"{not json", "broken.json")

    def test_error_does_not_leak_token(self):
        raw = json.dumps(token_payload(teamIDs=[])).encode()
        with pytest.raises(MalformedToken) as excinfo:
            parse_token(raw, "acc-1.json")
        assert "secret-token" not in str(excinfo.value)

    def test_blank_team_positions_are_kept(self):
        raw = json.dumps(token_payload(teamIDs=["d", "", "pp"])).encode()
        assert parse_token(raw, "acc-1.json").team_ids == ("d", "", "pp")


# =============================================================
# TEST: TokenStore
# =============================================================

class TestTokenStoreDirectNames:
    """Direct file naming conventions."""

    @pytest.mark.parametrize("filename", ["acc-1.json", "ibmAccount-acc-1.json", "token-acc-1.json"])
    def test_json_names(self, tmp_path, filename):
        write_json(tmp_path / filename, token_payload())
        record = TokenStore(tmp_path).resolve("acc-1")
        assert record.instance_id == "guid-1"

    def test_flat_per_account_file(self, tmp_path):
        (tmp_path / "acc-1").mkdir()
        (tmp_path / "acc-1" / "token").write_text("guid-1;tok-1;d;q;pp;prod;dr\n", encoding="utf-8")

        record = TokenStore(tmp_path).resolve("acc-1")

        assert record.account == "acc-1"
        assert record.bearer == "Bearer tok-1"
        assert record.team_ids[3] == "prod"

    def test_account_is_trimmed(self, tmp_path):
        write_json(tmp_path / "acc-1.json", token_payload())
        assert TokenStore(tmp_path).resolve("  acc-1 ").account == "acc-1"

    def test_direct_file_for_other_account_is_skipped(self, tmp_path):
        write_json(tmp_path / "acc-1.json", token_payload("someone-else"))
        with pytest.raises(TokenNotFound):
            TokenStore(tmp_path).resolve("acc-1")

    def test_malformed_direct_file_is_reported(self, tmp_path):
        (tmp_path / "acc-1.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(MalformedToken) as excinfo:
            TokenStore(tmp_path).resolve("acc-1")
        assert excinfo.value.source.endswith("acc-1.json")

    def test_malformed_direct_file_does_not_hide_scan_match(self, tmp_path):
        (tmp_path / "acc-1.json").write_text("{broken", encoding="utf-8")
        write_json(tmp_path / "all-tokens.json", token_payload())
        assert TokenStore(tmp_path).resolve("acc-1").instance_id == "guid-1"


class TestTokenStoreScan:
    """Fallback scan of the token directory."""

    def test_scan_matches_embedded_account(self, tmp_path):
        write_json(tmp_path / "a.json", token_payload("other"))
        write_json(tmp_path / "b.JSON", token_payload("acc-1", ibmInstanceID="guid-b"))

        assert TokenStore(tmp_path).resolve("acc-1").instance_id == "guid-b"

    def test_scan_skips_directories_and_other_files(self, tmp_path):
        (tmp_path / "nested.json").mkdir()
        write_json(tmp_path / "nested.json" / "acc-1.json", token_payload())
        write_json(tmp_path / "acc-1.txt", token_payload())
        (tmp_path / "junk.json").write_text("not json", encoding="utf-8")

        with pytest.raises(TokenNotFound) as excinfo:
            TokenStore(tmp_path).resolve("acc-1")
        assert str(tmp_path) in str(excinfo.value)
        assert "acc-1" in str(excinfo.value)

    def test_empty_directory_is_not_found(self, tmp_path):
        with pytest.raises(TokenNotFound):
            TokenStore(tmp_path).resolve("acc-1")

    def test_path_like_account_only_scans(self, tmp_path):
        (tmp_path / "sub").mkdir()
        write_json(tmp_path / "sub" / "x.json", token_payload("../sub/x"))
        with pytest.raises(TokenNotFound):
            TokenStore(tmp_path / "sub" / "..").resolve("../sub/x")

    def test_unreadable_directory(self, tmp_path):
        with pytest.raises(TokenDirectoryUnreadable):
            TokenStore(tmp_path / "missing").resolve("acc-1")


class TestTokenStoreInput:
    """Input validation."""

    @pytest.mark.parametrize("account", ["", "   ", None])
    def test_empty_account(self, tmp_path, account):
        with pytest.raises(InvalidAccount):
            TokenStore(tmp_path).resolve(account)


class TestTokenStoreCache:
    """Read-through cache."""

    def test_second_resolve_does_no_file_io(self, tmp_path, monkeypatch):
        path = write_json(tmp_path / "acc-1.json", token_payload())
        store = TokenStore(tmp_path)
        first = store.resolve("acc-1")

        path.unlink()

        def fail(*args, **kwargs):
            raise AssertionError("file read after cache hit")

        monkeypatch.setattr(store, "_read", fail)
        second = store.resolve("acc-1")

        assert second is first

    def test_failures_are_not_cached(self, tmp_path):
        store = TokenStore(tmp_path)
        with pytest.raises(TokenNotFound):
            store.resolve("acc-1")

        write_json(tmp_path / "acc-1.json", token_payload())
        assert store.resolve("acc-1").account == "acc-1"

    def test_concurrent_resolves_agree(self, tmp_path):
        for i in range(5):
            write_json(tmp_path / f"acc-{i}.json", token_payload(f"acc-{i}", ibmInstanceID=f"guid-{i}"))
        store = TokenStore(tmp_path)
        accounts = [f"acc-{i % 5}" for i in range(50)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            records = list(pool.map(store.resolve, accounts))

        for account, record in zip(accounts, records):
            assert record.account == account
            assert record.instance_id == "guid-" + account.split("-")[1]
            assert store.cached(account) == record


class TestReadWriteLock:
    """Readers share, writers exclude."""

    def test_readers_share(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        lock.acquire_read()
        lock.release_read()
        lock.release_read()

    def test_writer_waits_for_reader(self):
        lock = ReadWriteLock()
        acquired = threading.Event()

        def writer():
            lock.acquire_write()
            acquired.set()
            lock.release_write()

        lock.acquire_read()
        thread = threading.Thread(target=writer)
        thread.start()
        assert not acquired.wait(0.1)

        lock.release_read()
        assert acquired.wait(2)
        thread.join(2)

    def test_queued_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order = []

        def writer():
            lock.acquire_write()
            order.append("writer")
            lock.release_write()

        def late_reader():
            lock.acquire_read()
            order.append("reader")
            lock.release_read()

        lock.acquire_read()
        writer_thread = threading.Thread(target=writer)
        writer_thread.start()

        deadline = time.monotonic() + 2
        while lock._writers_waiting == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert lock._writers_waiting == 1

        reader_thread = threading.Thread(target=late_reader)
        reader_thread.start()
        reader_thread.join(0.1)
        assert order == []

        lock.release_read()
        writer_thread.join(2)
        reader_thread.join(2)
        assert order == ["writer", "reader"]
