from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from ledger_analytics.importer import FeedImporter
from ledger_analytics.logging_utils import EventLogger, log_event
from tests.helpers.fake_ledger import make_transaction

LOGGER = logging.getLogger("ledger_analytics.tests")


def _events(caplog) -> list:
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == LOGGER.name]


def test_log_event_renders_one_json_line(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER.name)

    log_event(LOGGER, logging.INFO, "page_applied", at=datetime(2017, 3, 1, tzinfo=timezone.utc), count=2)

    assert _events(caplog) == [{"event": "page_applied", "at": "2017-03-01 00:00:00+00:00", "count": 2}]


def test_event_logger_merges_bound_fields(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER.name)
    log = EventLogger(LOGGER, feed_id="feed1")

    log.event(logging.INFO, "cursor_advanced", feed_after="2")
    log.bind(tx_id="tx1").event(logging.INFO, "transaction_already_applied")
    log.event(logging.INFO, "feed_resynced", feed_id="feed2")

    assert _events(caplog) == [
        {"event": "cursor_advanced", "feed_id": "feed1", "feed_after": "2"},
        {"event": "transaction_already_applied", "feed_id": "feed1", "tx_id": "tx1"},
        {"event": "feed_resynced", "feed_id": "feed2"},
    ]
    assert log.extra == {"feed_id": "feed1"}


def test_disabled_level_is_not_rendered(caplog, monkeypatch):
    caplog.set_level(logging.INFO, logger=LOGGER.name)
    rendered = []
    monkeypatch.setattr("ledger_analytics.logging_utils.render_event", lambda *a: rendered.append(a) or "")

    EventLogger(LOGGER, feed_id="feed1").event(logging.DEBUG, "transaction_importing", tx_id="tx1")
    log_event(LOGGER, logging.DEBUG, "create_table", ddl="CREATE TABLE T")

    assert rendered == []
    assert _events(caplog) == []


def test_importer_events_carry_feed_id(ledger, target, caplog):
    caplog.set_level(logging.DEBUG, logger="ledger_analytics.importer")
    ledger.transactions = [make_transaction("tx1")]
    importer = FeedImporter.connect(client=ledger.client(), target=target, alias="analytics", sleep=lambda _s: None)

    importer.run_once()

    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "ledger_analytics.importer"]
    assert {e["event"] for e in events} >= {"feed_connected", "transaction_importing", "cursor_advanced"}
    assert all(e["feed_id"] == "feed1" for e in events)
