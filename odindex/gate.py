import hmac
from enum import Enum
from typing import List, Optional, Tuple

from odindex.config import DEFAULT_CACHE_CONTROL
from odindex.passwords import PasswordResolver
from odindex.routes import Gate, classify


class GateStatus(Enum):
    OPEN = 200
    LOCKED = 401
    LOCKED_NO_PASSWORD_SET = 403


class Decision:
    def __init__(self, status: GateStatus, gate_path: Optional[str] = None, password: Optional[str] = None,
                 candidates: Tuple[str, ...] = (), transient: bool = False):
        self.status = status
        self.gate_path = gate_path
        self.password = password
        self.candidates = candidates
        self.transient = transient

    @property
    def protected(self) -> bool:
        return self.status != GateStatus.OPEN

    def __repr__(self):
        return f"<Decision status={self.status.name} gate=\"{self.gate_path}\">"


class AuthGate:
    def __init__(self, gates: List[Gate], resolver: PasswordResolver):
        self.gates = gates
        self.resolver = resolver

    def check(self, path: str, is_folder: bool = True) -> Decision:
        candidates = classify(path, self.gates, is_folder)
        if not candidates:
            return Decision(GateStatus.OPEN)

        gate_path, found, transient = self.resolver.resolve_first(candidates)
        if found is None:
            return Decision(GateStatus.LOCKED_NO_PASSWORD_SET, candidates[-1],
                            candidates=candidates, transient=transient)

        return Decision(GateStatus.LOCKED, gate_path, found.plaintext, candidates=candidates)


def unlocked(decision: Decision, session: Optional[dict]) -> bool:
    if decision.status == GateStatus.OPEN:
        return True
    if decision.status != GateStatus.LOCKED or not session:
        return False

    presented = (session.get("passKeys") or {}).get(decision.gate_path)
    if not isinstance(presented, str):
        return False
    return hmac.compare_digest(presented.encode(), decision.password.encode())


def apply_cache_policy(response, decision: Optional[Decision], default: str = DEFAULT_CACHE_CONTROL):
    # Authorization outcomes are per visitor and must never sit in a shared cache
    if decision is not None and decision.protected:
        response.headers["Cache-Control"] = "no-cache"
        response.headers["X-Need-NoCache"] = "yes"
    else:
        response.headers["Cache-Control"] = default
    return response
