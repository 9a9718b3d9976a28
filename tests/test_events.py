import logging

from autoscribe.events import EventRecorder
from autoscribe.storage import list_pipeline_events


def test_events_are_logged_and_persisted(conn, clock, caplog):
    recorder = EventRecorder(conn, logging.getLogger("autoscribe.events"), clock)
    with caplog.at_level(logging.INFO, logger="autoscribe.events"):
        recorder.emit("queue_item_completed", campaign_id="c1", subject_id=5, reference="out.md")

    assert "event=queue_item_completed campaign_id=c1 subject_id=5 reference=out.md" in caplog.text
    [event] = list_pipeline_events(conn, campaign_id="c1")
    assert event["event"] == "queue_item_completed"
    assert event["subject_id"] == "5"
    assert event["fields"] == {"reference": "out.md"}


def test_recorder_without_connection_only_logs(conn, clock, caplog):
    recorder = EventRecorder(None, logging.getLogger("autoscribe.events"), clock)
    with caplog.at_level(logging.WARNING, logger="autoscribe.events"):
        recorder.emit("credential_suspended", subject_id="cred_1", failures=5)

    assert "event=credential_suspended" in caplog.text
    assert list_pipeline_events(conn) == []
