"""
Entitlement change notices over Redis pub/sub.

Billing and seat collaborators publish on ``entitlement:<educator_id>`` after
they write. ``EntitlementWatcher`` listens for one student and re-runs the
gate on each relevant notice; the gate itself stays side-effect free and
nothing here caches a decision as truth.
"""
import json
import logging
import threading
from typing import Callable, Optional

from examcore.services.entitlement import GateDecision, check_entitlement

logger = logging.getLogger(__name__)


def channel_for(educator_id: str) -> str:
    return f"entitlement:{educator_id}"


def publish_entitlement_change(client, educator_id: str, student_id: Optional[str] = None, kind: str = "subscription") -> int:
    """Announce that subscription/seat/enrollment data changed; ``student_id=None`` means everyone."""
    payload = json.dumps({"educatorId": educator_id, "studentId": student_id, "kind": kind})
    return client.publish(channel_for(educator_id), payload)


class EntitlementWatcher:
    def __init__(self, client, session_factory, student_id: str, tenant_slug: str, educator_id: str,
                 on_decision: Callable[[GateDecision], None], poll_timeout: float = 1.0):
        self.client = client
        self.session_factory = session_factory
        self.student_id = student_id
        self.tenant_slug = tenant_slug
        self.educator_id = educator_id
        self.on_decision = on_decision
        self.poll_timeout = poll_timeout
        self.pubsub = None
        self.last: Optional[GateDecision] = None

    def evaluate(self) -> GateDecision:
        with self.session_factory() as db:
            decision = check_entitlement(db, self.student_id, self.tenant_slug)
        if decision != self.last:
            self.last = decision
            self.on_decision(decision)
        return decision

    def start(self) -> GateDecision:
        self.pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        self.pubsub.subscribe(channel_for(self.educator_id))
        return self.evaluate()

    def _relevant(self, message) -> bool:
        try:
            data = json.loads(message.get("data") or "{}")
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed entitlement notice: {message!r}")
            return False
        target = data.get("studentId")
        return target is None or target == self.student_id

    def poll_once(self) -> Optional[GateDecision]:
        message = self.pubsub.get_message(timeout=self.poll_timeout)
        if not message or message.get("type") != "message" or not self._relevant(message):
            return None
        return self.evaluate()

    def run(self, stop: threading.Event) -> None:
        if self.pubsub is None:
            self.start()
        try:
            while not stop.is_set():
                self.poll_once()
        finally:
            self.close()

    def close(self) -> None:
        if self.pubsub is not None:
            self.pubsub.close()
            self.pubsub = None
