import json

from elastic_tier.clock import now_ist_iso


SEVERITY = {
    "scaling_applied": "NOTICE",
    "scaling_no_change": "INFO",
    "scaling_cooldown": "INFO",
    "member_draining": "INFO",
    "member_terminated": "INFO",
    "drain_cancelled": "INFO",
    "launch_failed": "WARNING",
    "fleet_health_alarm": "CRITICAL",
    "fleet_health_cleared": "NOTICE",
}


class EventPublisher:
    def __init__(self, project_id=None, topic="fleet-events", source="elastic-tier",
                 publisher=None, logger=None):
        self.source = source
        self.recent = []
        self.publisher = publisher
        self.logger = logger
        self.topic_path = None

        if project_id and publisher is None:
            from google.cloud import pubsub_v1
            self.publisher = pubsub_v1.PublisherClient()
        if project_id and logger is None:
            from google.cloud import logging_v2
            self.logger = logging_v2.Client(project=project_id).logger(source)
        if self.publisher is not None:
            self.topic_path = self.publisher.topic_path(project_id, topic)

    def publish(self, kind, **details):
        event = {
            "timestamp": now_ist_iso(),
            "source": self.source,
            "event_type": kind,
            "severity": SEVERITY.get(kind, "INFO"),
        }
        event.update(details)

        self.recent.append(event)
        if len(self.recent) > 100:
            self.recent = self.recent[-100:]

        if self.publisher is not None:
            try:
                self.publisher.publish(self.topic_path, json.dumps(event, default=str).encode("utf-8"))
            except Exception as e:
                print(f"Event publish failed ({kind}): {e}", flush=True)
        if self.logger is not None:
            try:
                self.logger.log_text(json.dumps(event, default=str), severity=event["severity"])
            except Exception as e:
                print(f"Event log failed ({kind}): {e}", flush=True)

        print(f"EVENT {kind}: {details}", flush=True)
        return event

    def of_kind(self, kind):
        return [e for e in self.recent if e["event_type"] == kind]
