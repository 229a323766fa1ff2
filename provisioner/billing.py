# provisioner/billing.py
import logging
from datetime import datetime, timezone

log = logging.getLogger(__name__)

EVENT_START = "deployment_start"
EVENT_END = "deployment_end"


class StoreBillingHooks:
    """
    Deployment usage events written to the store for the billing service to
    aggregate. Callers treat both hooks as fire-and-forget.
    """

    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def track_deployment_start(self, deployment_id: str):
        now = self.clock()
        self.store.record_usage_event({
            "deployment_id": deployment_id,
            "event": EVENT_START,
            "timestamp": now.isoformat(),
        })
        log.info("Tracked deployment start for %s", deployment_id)

    def track_deployment_end(self, deployment_id: str):
        now = self.clock()
        event = {
            "deployment_id": deployment_id,
            "event": EVENT_END,
            "timestamp": now.isoformat(),
        }
        started = [
            e for e in self.store.list_usage_events(deployment_id)
            if e.get("event") == EVENT_START
        ]
        if started:
            start = datetime.fromisoformat(max(e["timestamp"] for e in started))
            event["duration_seconds"] = max(0, int((now - start).total_seconds()))
        self.store.record_usage_event(event)
        log.info("Tracked deployment end for %s (%ss)", deployment_id, event.get("duration_seconds", "?"))
