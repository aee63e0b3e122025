import json
import logging

from imagecache.observers.dispatcher import EventBus
from imagecache.observers.events import BuildSummary, ResourceCreated, StateEntered, new_ctx
from imagecache.observers.jsonfile import JsonFileObserver
from imagecache.observers.logger import LoggerObserver


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


class Broken:
    def notify(self, ev): raise RuntimeError("observer down")


def test_new_ctx_reuses_run_id():
    ctx = new_ctx("proj", "img", run_id="r-1")
    assert ctx["run_id"] == "r-1"
    assert ctx["ts"].endswith("Z")
    assert new_ctx("p", "i")["run_id"] != new_ctx("p", "i")["run_id"]


def test_bus_fans_out_and_survives_broken_observer():
    cap = Capture()
    bus = EventBus([Broken(), cap])
    ev = StateEntered(**new_ctx("proj", "img"), state="validating")
    bus.emit(ev)
    assert cap.events == [ev]

    late = Capture()
    bus.subscribe(late)
    bus.emit(ev)
    assert len(late.events) == 1


def test_json_file_observer_writes_one_line_per_event(tmp_path):
    path = tmp_path / "events" / "build.jsonl"
    obs = JsonFileObserver(path)
    obs.notify(ResourceCreated(**new_ctx("proj", "img", "r"), kind="disk", name="img-disk"))
    obs.notify(BuildSummary(**new_ctx("proj", "img", "r"), status="OK", duration_s=12))

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [d["type"] for d in lines] == ["ResourceCreated", "BuildSummary"]
    assert lines[0]["name"] == "img-disk"
    assert lines[1]["failed_step"] is None


def test_logger_observer_logs_at_debug(caplog):
    logger = logging.getLogger("imagecache.test")
    with caplog.at_level(logging.DEBUG, logger="imagecache.test"):
        LoggerObserver(logger).notify(StateEntered(**new_ctx("proj", "img"), state="cleanup"))
    assert "[EVENT] StateEntered" in caplog.text
    assert "state=cleanup" in caplog.text
