"""Tests for the remote fetch port, its error taxonomy and its implementations."""

import json
import threading

import pytest

from viralcrawl.integrations.callback_adapter import CallbackClientAdapter
from viralcrawl.integrations.remote import (
    ErrorKind,
    RemoteFetchError,
    RemoteFetchPort,
    RemoteRateLimitedError,
    RemoteTimeoutError,
    SessionNotReadyError,
    classify_error,
)
from viralcrawl.integrations.replay_source import ReplaySource

from factories import P1, FakePort, make_match, make_round


class TestClassifyError:
    @pytest.mark.parametrize(
        "error,kind",
        [
            (SessionNotReadyError("x"), ErrorKind.SESSION_NOT_READY),
            (RemoteTimeoutError("x"), ErrorKind.TIMEOUT),
            (RemoteRateLimitedError("x"), ErrorKind.RATE_LIMITED),
            (RemoteFetchError("x"), ErrorKind.OTHER),
            (TimeoutError(), ErrorKind.TIMEOUT),
            (RuntimeError("Request timeout after 30s"), ErrorKind.TIMEOUT),
            (RuntimeError("connection timed out"), ErrorKind.TIMEOUT),
            (RuntimeError("RATE_LIMIT_EXCEEDED"), ErrorKind.RATE_LIMITED),
            (RuntimeError("Rate limited by coordinator"), ErrorKind.RATE_LIMITED),
            (RuntimeError("Rate-limited by GC"), ErrorKind.RATE_LIMITED),
            (RuntimeError("RateLimitExceeded"), ErrorKind.RATE_LIMITED),
            (RuntimeError("generate rate: 3/s"), ErrorKind.OTHER),
            (RuntimeError("Not connected to GC"), ErrorKind.SESSION_NOT_READY),
            (RuntimeError("failed to generate response"), ErrorKind.OTHER),
            (KeyError("matchid"), ErrorKind.OTHER),
        ],
    )
    def test_classification(self, error, kind):
        assert classify_error(error) is kind


class FakeClient:
    """Callback-style client that answers from a background thread."""

    def __init__(self, games=None, profile=None, have_session=True, answer=True):
        self.games = games
        self.profile = profile
        self.have_session = have_session
        self.answer = answer
        self.fail_with = None

    def _reply(self, callback, payload):
        if self.fail_with is not None:
            raise self.fail_with
        if self.answer:
            threading.Thread(target=callback, args=(payload,)).start()

    def request_recent_games(self, player_id, callback):
        self._reply(callback, self.games)

    def request_players_profile(self, player_id, callback):
        self._reply(callback, self.profile)


class TestCallbackClientAdapter:
    def test_satisfies_port_protocol(self):
        assert isinstance(CallbackClientAdapter(FakeClient()), RemoteFetchPort)
        assert isinstance(FakePort(), RemoteFetchPort)

    def test_returns_callback_payloads(self):
        match = make_match("1", [make_round([1])])
        adapter = CallbackClientAdapter(FakeClient(games=[match], profile={"account_id": 1}))

        assert adapter.fetch_match_history(P1, timeout=2) == [match]
        assert adapter.fetch_profile(P1, timeout=2) == {"account_id": 1}

    def test_empty_answers(self):
        adapter = CallbackClientAdapter(FakeClient(games=None, profile={}))

        assert adapter.fetch_match_history(P1, timeout=2) == []
        assert adapter.fetch_profile(P1, timeout=2) is None

    def test_session_flag(self):
        assert CallbackClientAdapter(FakeClient(have_session=True)).is_session_ready()
        assert not CallbackClientAdapter(FakeClient(have_session=False)).is_session_ready()

    def test_no_session_raises_without_calling_client(self):
        client = FakeClient(have_session=False)
        client.fail_with = AssertionError("client must not be called")
        adapter = CallbackClientAdapter(client)

        with pytest.raises(SessionNotReadyError):
            adapter.fetch_match_history(P1, timeout=1)

    def test_unanswered_history_is_empty(self):
        adapter = CallbackClientAdapter(FakeClient(answer=False))
        assert adapter.fetch_match_history(P1, timeout=0.05) == []

    def test_unanswered_history_can_raise(self):
        adapter = CallbackClientAdapter(FakeClient(answer=False), empty_history_on_timeout=False)
        with pytest.raises(RemoteTimeoutError):
            adapter.fetch_match_history(P1, timeout=0.05)

    def test_unanswered_profile_times_out(self):
        adapter = CallbackClientAdapter(FakeClient(answer=False))
        with pytest.raises(RemoteTimeoutError):
            adapter.fetch_profile(P1, timeout=0.05)

    def test_late_answer_after_timeout_is_dropped(self):
        callbacks = []

        class SlowClient:
            have_session = True

            def request_players_profile(self, player_id, callback):
                callbacks.append(callback)

        adapter = CallbackClientAdapter(SlowClient())
        with pytest.raises(RemoteTimeoutError):
            adapter.fetch_profile(P1, timeout=0.05)

        callbacks[0]({"account_id": 1})

    def test_client_errors_are_wrapped(self):
        client = FakeClient()
        client.fail_with = OSError("socket closed")
        adapter = CallbackClientAdapter(client)

        with pytest.raises(RemoteFetchError, match="socket closed"):
            adapter.fetch_profile(P1, timeout=1)


class TestReplaySource:
    @pytest.fixture
    def root(self, tmp_path):
        (tmp_path / "matches").mkdir()
        (tmp_path / "profiles").mkdir()
        return tmp_path

    def test_reads_recorded_payloads(self, root):
        match = make_match("1", [make_round([1])])
        (root / "matches" / f"{P1}.json").write_text(json.dumps([match]))
        (root / "profiles" / f"{P1}.json").write_text(json.dumps({"account_id": 1}))
        source = ReplaySource(root)

        assert source.is_session_ready()
        assert source.fetch_match_history(P1) == [match]
        assert source.fetch_profile(P1) == {"account_id": 1}

    def test_missing_files_mean_no_data(self, root):
        source = ReplaySource(root)
        assert source.fetch_match_history(P1) == []
        assert source.fetch_profile(P1) is None

    def test_malformed_payloads(self, root):
        (root / "matches" / f"{P1}.json").write_text(json.dumps({"not": "a list"}))
        (root / "profiles" / f"{P1}.json").write_text("{broken")
        source = ReplaySource(root)

        with pytest.raises(RemoteFetchError):
            source.fetch_match_history(P1)
        with pytest.raises(RemoteFetchError):
            source.fetch_profile(P1)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ReplaySource(tmp_path / "nope")
