import os
import random

from anonbridge.access import Principal
from anonbridge.config import BridgeConfig
from anonbridge.http_api import Runtime, build_runtime


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


def open_runtime(tmpdir: str, clock: FakeClock, **overrides) -> Runtime:
    config = BridgeConfig(db_path=os.path.join(tmpdir, "bridge.db"), **overrides)
    return build_runtime(config, now_func=clock.now, rng=random.Random(7))


def register_pair(runtime: Runtime, department: str = "Physics") -> tuple[Principal, Principal]:
    requester = runtime.identity.register("requester", department, 2)
    responder = runtime.identity.register("responder", department)
    return runtime.access.principal(requester.actor_id), runtime.access.principal(responder.actor_id)
