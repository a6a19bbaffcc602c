from typing import Iterable, List, Optional, Tuple

SENTINEL_NAME = ".password"


def normalize(path: str) -> str:
    """Lower-case and terminate with a slash, so matching works per segment."""
    path = path.lower()
    if not path.startswith("/"):
        path = "/" + path
    if not path.endswith("/"):
        path += "/"
    return path


def parent(path: str) -> str:
    """Parent directory of a normalized path, ``/a/b/`` -> ``/a/``."""
    trimmed = path.rstrip("/")
    return trimmed[:trimmed.rfind("/") + 1] or "/"


class Gate:
    def __init__(self, route: str):
        self.route_prefix = normalize(route)
        self.sentinel_path = self.route_prefix + SENTINEL_NAME

    def matches(self, path: str) -> bool:
        return normalize(path).startswith(self.route_prefix)

    def __repr__(self):
        return f"<Gate route=\"{self.route_prefix}\">"


def load_gates(routes: Iterable) -> List[Gate]:
    # An empty entry must never protect the whole drive
    return [Gate(r) for r in routes if isinstance(r, str) and r.strip()]


def gate_for(path: str, gates: List[Gate]) -> Optional[Gate]:
    """Outermost gate protecting ``path``."""
    matching = [gate for gate in gates if gate.matches(path)]
    if not matching:
        return None
    return min(matching, key=lambda gate: len(gate.route_prefix))


def classify(path: str, gates: List[Gate], is_folder: bool = True) -> Tuple[str, ...]:
    """Sentinel paths that may unlock ``path``, nearest ancestor first.

    Every directory level from the folder holding ``path`` up to the outermost
    matching gate may hold a password file, so nested gates yield the child's
    sentinel before the parent's. A file cannot hold a password file, so the
    walk starts at its parent for ``is_folder=False``.
    """
    outermost = gate_for(path, gates)
    if outermost is None:
        return ()

    candidates = []
    current = normalize(path)
    if not is_folder and current != "/":
        current = parent(current)
    while current.startswith(outermost.route_prefix):
        candidates.append(current + SENTINEL_NAME)
        if current == "/":
            break
        current = parent(current)
    # A gate configured on a file still protects it
    return tuple(candidates) or (outermost.sentinel_path,)


def is_sentinel(path: str) -> bool:
    return path.rstrip("/").rsplit("/", 1)[-1].lower() == SENTINEL_NAME
