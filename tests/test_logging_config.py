import json
import logging

from spin_agent.logging_config import JSONFormatter, bind_logger, create_correlation_id, get_logger


def make_record(**extra):
    record = logging.LogRecord("spin_agent.test", logging.INFO, __file__, 1, "hello %s", ("Ana",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "spin_agent.test"
        assert data["message"] == "hello Ana"
        assert "context" not in data

    def test_context_is_serialized(self):
        data = json.loads(JSONFormatter().format(make_record(context={"session_id": "s1", "count": 2})))
        assert data["context"] == {"session_id": "s1", "count": 2}


class TestBindLogger:
    def test_bound_and_call_context_are_merged(self, caplog):
        log = bind_logger(get_logger("test"), session_id="s1", correlation_id=None)

        with caplog.at_level(logging.INFO, logger="spin_agent.test"):
            log.info("processed", context={"score": 10})

        assert caplog.records[-1].context == {"session_id": "s1", "score": 10}


def test_correlation_id_shape():
    first = create_correlation_id()
    assert len(first) == 16
    assert first != create_correlation_id()
