from __future__ import annotations

import pytest
from flask import Response

from odindex.gate import AuthGate, Decision, GateStatus, apply_cache_policy, unlocked
from odindex.passwords import PasswordResolver
from odindex.routes import load_gates
from odindex.store import Cache


@pytest.fixture
def gate(drive, store, settings):
    return AuthGate(load_gates(settings.protected_routes), PasswordResolver(drive, Cache(store)))


class TestCheck:
    def test_open_path(self, gate, drive):
        decision = gate.check("/Public/readme.txt")
        assert decision.status == GateStatus.OPEN
        assert not decision.protected
        assert drive.calls["read_text"] == 0

    def test_locked(self, gate):
        decision = gate.check("/Private/file.txt")
        assert decision.status == GateStatus.LOCKED
        assert decision.status.value == 401
        assert decision.gate_path == "/private/.password"
        assert decision.password == "secret123"

    def test_nested_gate_uses_own_password(self, gate):
        decision = gate.check("/Private/Nested/deep.txt")
        assert decision.gate_path == "/private/nested/.password"
        assert decision.password == "nested-pass"

    def test_inherits_parent_password(self, gate):
        decision = gate.check("/Private/Inherit/child.txt")
        assert decision.gate_path == "/private/.password"

    def test_no_password_set(self, gate):
        decision = gate.check("/docs/x")
        assert decision.status == GateStatus.LOCKED_NO_PASSWORD_SET
        assert decision.status.value == 403
        assert decision.password is None
        assert decision.gate_path == "/docs/.password"
        assert not decision.transient

    def test_transient_failure(self, gate, drive):
        drive.fail("/private/.password")
        decision = gate.check("/Private/file.txt", is_folder=False)
        assert decision.status == GateStatus.LOCKED_NO_PASSWORD_SET
        assert decision.transient

    def test_file_is_not_a_candidate(self, gate, drive):
        drive.fail("/private/file.txt/.password")
        decision = gate.check("/Private/file.txt", is_folder=False)
        assert decision.status == GateStatus.LOCKED
        assert decision.candidates == ("/private/.password",)
        assert drive.calls["read_text"] == 1

    def test_nested_file_candidates(self, gate):
        decision = gate.check("/Private/Nested/deep.txt", is_folder=False)
        assert decision.candidates == ("/private/nested/.password", "/private/.password")

    def test_repr_hides_password(self, gate):
        assert "secret123" not in repr(gate.check("/Private/file.txt"))


class TestUnlocked:
    def test_open_always(self):
        assert unlocked(Decision(GateStatus.OPEN), None)

    def test_locked_without_session(self):
        decision = Decision(GateStatus.LOCKED, "/p/.password", "pw")
        assert not unlocked(decision, None)
        assert not unlocked(decision, {"id": "x"})

    def test_locked_with_matching_pass_key(self):
        decision = Decision(GateStatus.LOCKED, "/p/.password", "pw")
        assert unlocked(decision, {"passKeys": {"/p/.password": "pw"}})

    def test_locked_with_stale_pass_key(self):
        decision = Decision(GateStatus.LOCKED, "/p/.password", "rotated")
        assert not unlocked(decision, {"passKeys": {"/p/.password": "pw"}})

    def test_key_for_other_gate(self):
        decision = Decision(GateStatus.LOCKED, "/p/.password", "pw")
        assert not unlocked(decision, {"passKeys": {"/q/.password": "pw"}})

    def test_no_password_set_never_unlocks(self):
        decision = Decision(GateStatus.LOCKED_NO_PASSWORD_SET, "/p/.password")
        assert not unlocked(decision, {"passKeys": {"/p/.password": "pw"}})


class TestCachePolicy:
    def test_open_uses_edge_cache(self):
        response = apply_cache_policy(Response(), Decision(GateStatus.OPEN), "max-age=1")
        assert response.headers["Cache-Control"] == "max-age=1"
        assert "X-Need-NoCache" not in response.headers

    @pytest.mark.parametrize("status", [GateStatus.LOCKED, GateStatus.LOCKED_NO_PASSWORD_SET])
    def test_protected_is_never_cached(self, status):
        response = apply_cache_policy(Response(), Decision(status))
        assert response.headers["Cache-Control"] == "no-cache"
        assert response.headers["X-Need-NoCache"] == "yes"
