import csv
import json
from pathlib import Path

from seqflow.reporting.artifacts import write_manifest
from seqflow.reporting.metrics import CsvSink, JsonlSink
from seqflow.reporting.plots import PlotAdapter


def test_jsonl_sink_records_numeric_metrics(tmp_path):
    sink = JsonlSink(tmp_path / "m.jsonl", architecture="[IN]1-1[][OUT]", seed=3, sha="abc")
    sink.on_epoch(1, {"loss": 0.5, "note": "skipped"})
    sink(2, {"loss": 0.25})
    records = [json.loads(line) for line in (tmp_path / "m.jsonl").read_text().splitlines()]
    assert records[0] == {"epoch": 1, "architecture": "[IN]1-1[][OUT]", "seed": 3, "sha": "abc", "loss": 0.5}
    assert records[1]["epoch"] == 2


def test_csv_sink_writes_header_once(tmp_path):
    sink = CsvSink(tmp_path / "m.csv")
    sink.on_epoch(1, {"loss": 1.0, "evaluation": 0.5})
    sink.on_epoch(2, {"loss": 0.5, "evaluation": 0.25})
    with (tmp_path / "m.csv").open() as handle:
        rows = list(csv.DictReader(handle))
    assert [row["epoch"] for row in rows] == ["1", "2"]
    assert set(rows[0]) == {"epoch", "loss", "evaluation"}


def test_plot_adapter_only_writes_when_enabled(tmp_path):
    quiet = PlotAdapter(tmp_path / "quiet")
    quiet.on_epoch(1, {"loss": 1.0})
    assert quiet.close() is None
    assert not (tmp_path / "quiet").exists()

    loud = PlotAdapter(tmp_path / "loud", enable_plots=True)
    loud.on_epoch(1, {"loss": 1.0, "evaluation": 0.5})
    loud.on_epoch(2, {"loss": 0.5, "evaluation": 0.4})
    path = loud.close()
    assert path is not None and path.exists()


def test_write_manifest_captures_architecture(tmp_path):
    path = write_manifest(
        tmp_path / "nested" / "manifest.json",
        config={"train": {"seed": 1}},
        architecture="[IN]2-1[][OUT]",
        parameter_count=3,
    )
    manifest = json.loads(Path(path).read_text())
    assert manifest["architecture"] == "[IN]2-1[][OUT]"
    assert manifest["parameter_count"] == 3
    assert manifest["config"]["train"]["seed"] == 1
    assert "git_sha" in manifest and "generated_at" in manifest
