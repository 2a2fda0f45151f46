"""Test doubles for task handlers and the redis client."""
import fnmatch
import threading

from engine.handlers import HandlerRegistry, TaskHandler, TaskResult
from engine.models import SUBTYPES


class StaticHandler(TaskHandler):
    """Returns the same findings for every target."""

    def __init__(self, name, severity_counts, findings=None):
        self.name = name
        self.severity_counts = severity_counts
        self.findings = findings if findings is not None else [
            {"type": name, "severity": severity, "title": f"{name} {severity}"}
            for severity, count in severity_counts.items()
            for _ in range(count)
        ]

    def execute(self, target, options):
        return TaskResult(
            findings=[dict(f) for f in self.findings],
            severity_counts=dict(self.severity_counts),
        )


class FailingHandler(TaskHandler):
    name = "broken"

    def execute(self, target, options):
        raise RuntimeError(f"engine crashed on {target.value}")


class GatedHandler(TaskHandler):
    """Blocks on gated targets until the test releases them."""
    name = "gated"

    def __init__(self, gated_targets=None):
        self.gated_targets = set(gated_targets) if gated_targets is not None else None
        self.processed = []
        self.started = {}
        self.gates = {}
        self.opened = False
        self.lock = threading.Lock()

    def _events(self, value):
        with self.lock:
            if value not in self.started:
                self.started[value] = threading.Event()
                self.gates[value] = threading.Event()
                if self.opened:
                    self.gates[value].set()
            return self.started[value], self.gates[value]

    def execute(self, target, options):
        started, gate = self._events(target.value)
        started.set()
        if self.gated_targets is None or target.value in self.gated_targets:
            gate.wait(timeout=10)
        with self.lock:
            self.processed.append(target.value)
        return TaskResult(
            findings=[{"type": "test", "severity": "low", "title": f"checked {target.value}"}],
            severity_counts={"low": 1},
        )

    def wait_started(self, value, timeout=5):
        return self._events(value)[0].wait(timeout)

    def release(self, value):
        self._events(value)[1].set()

    def release_all(self):
        with self.lock:
            self.opened = True
            gates = list(self.gates.values())
        for gate in gates:
            gate.set()


def registry_with(*handlers):
    """Register the same handler list for every kind and subtype."""
    registry = HandlerRegistry()
    for kind, subtypes in SUBTYPES.items():
        for subtype in subtypes:
            registry.register(kind.value, subtype, list(handlers))
    return registry




class FakeRedis:
    """Dict-backed stand-in for the handful of redis commands the registry uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    def expire(self, key, seconds):
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True

    def delete(self, *keys):
        for key in keys:
            self.ttls.pop(key, None)
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    def scan_iter(self, match="*"):
        return iter([key for key in list(self.data) if fnmatch.fnmatch(key, match)])
