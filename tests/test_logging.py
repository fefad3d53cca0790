"""Correlation fields on log records."""

import json
import logging

from paygate.common.logging import CorrelationFilter, bind, configure_logging, current_fields


def make_record() -> logging.LogRecord:
    return logging.LogRecord("paygate", logging.INFO, __file__, 1, "webhook_processed", None, None)


def test_bind_tags_records_until_reset():
    unbind = bind(rail="paypal", event_id="WH-1")
    record = make_record()
    try:
        CorrelationFilter().filter(record)
    finally:
        unbind()

    assert (record.rail, record.event_id, record.subscription_id) == ("paypal", "WH-1", "")
    assert record.trace_id == ""
    assert current_fields() == {"rail": "", "event_id": "", "subscription_id": ""}


def test_nested_bind_restores_outer_fields():
    outer = bind(rail="chain", event_id="0xabc:0")
    inner = bind(subscription_id="sub-1")
    inner()

    assert current_fields() == {"rail": "chain", "event_id": "0xabc:0", "subscription_id": ""}
    outer()


def test_configured_handler_writes_json(capsys):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("INFO")
        unbind = bind(rail="stripe", event_id="evt_1")
        try:
            logging.getLogger("paygate.test").info("webhook_processed rail=stripe")
        finally:
            unbind()
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)

    line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert line["level"] == "INFO"
    assert line["logger"] == "paygate.test"
    assert line["rail"] == "stripe"
    assert line["event_id"] == "evt_1"
    assert line["message"] == "webhook_processed rail=stripe"
