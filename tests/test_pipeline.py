# tests/test_pipeline.py
import json
import logging
from pathlib import Path

import pandas as pd
import pytest

import config_loader
import pipeline
from config_loader import ConfigLoader
from logging_utils import configure_logging

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config.json"

OUTREACH_CSV = """
shop,date,Product,trigger
S1,2020-01-01,X,Regular Check-In
S1,2020-03-01,X,Other
S2,2020-02-01,Y,Engagement Booster
"""

SALES_CSV = """
shop,Product,date,units_sold,location
S1,X,2020-02-01,5,Springfield
S1,X,2019-12-01,3,Springfield
S2,Y,2020-02-10,1,Shelbyville
"""


@pytest.fixture()
def workspace(tmp_path, monkeypatch):
    """A working directory with inputs and a config pinned to a fixed date."""
    config = json.loads(REPO_CONFIG.read_text())
    config["attribution"]["today"] = "2020-06-01"
    (tmp_path / "data").mkdir()
    (tmp_path / "data" / "outreach.csv").write_text(OUTREACH_CSV.strip() + "\n")
    (tmp_path / "data" / "sales.csv").write_text(SALES_CSV.strip() + "\n")
    (tmp_path / "config.json").write_text(json.dumps(config))

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ATTRIBUTION_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.delenv("NO_CACHE", raising=False)
    monkeypatch.setattr(ConfigLoader, "_instance", None)
    monkeypatch.setattr(config_loader, "_loader", None)
    monkeypatch.setattr(
        pipeline,
        "configure_logging",
        lambda path, logger_name=None: (logging.getLogger(logger_name), None),
    )
    return tmp_path


def test_get_dataset_builds_then_reuses_cache(workspace, caplog):
    cfg = config_loader.load_config()
    logger = logging.getLogger("pipeline_test")

    with caplog.at_level(logging.INFO):
        first, stats = pipeline.get_dataset(cfg, logger, run_ts="t1")
        second, cached_stats = pipeline.get_dataset(cfg, logger, run_ts="t2")

    assert len(first) == 3
    assert stats["sales_rows"] == 3
    assert "Reusing cached dataset" in caplog.text
    pd.testing.assert_frame_equal(first, second)
    assert cached_stats == stats


def test_cache_key_changes_with_input(workspace):
    cfg = config_loader.load_config()
    paths = ("data/outreach.csv", "data/sales.csv")
    today = cfg.get_today()

    before = pipeline.dataset_cache_key(cfg, *paths, today)
    with open(workspace / "data" / "sales.csv", "a") as f:
        f.write("S2,Y,2020-03-01,2,Shelbyville\n")

    assert pipeline.dataset_cache_key(cfg, *paths, today) != before


def test_config_edit_invalidates_cached_dataset(workspace, caplog):
    cfg = config_loader.load_config()
    logger = logging.getLogger("pipeline_test")
    pipeline.get_dataset(cfg, logger, run_ts="t1")

    config = json.loads((workspace / "config.json").read_text())
    config["images"]["products"]["X"] = "images/NEW_X.png"
    config["quintiles"]["labels"] = ["a", "b", "c", "d", "e"]
    (workspace / "config.json").write_text(json.dumps(config))
    cfg.reload()

    with caplog.at_level(logging.INFO):
        rebuilt, _ = pipeline.get_dataset(cfg, logger, run_ts="t2")

    assert "Reusing cached dataset" not in caplog.text
    assert list(rebuilt["total_contacts_amount"].cat.categories) == ["a", "b", "c", "d", "e"]
    assert set(rebuilt.loc[rebuilt["product"] == "X", "image_url"]) == {"images/NEW_X.png"}


def test_outreach_trigger_levels_exclude_pre_contact_label(workspace):
    cfg = config_loader.load_config()

    levels = pipeline.outreach_trigger_levels(cfg)

    assert "Sales before first contact" not in levels
    assert levels == ["Regular Check-In", "Other", "Engagement Booster"]


def test_main_writes_output(workspace):
    assert pipeline.main() == 0

    output = pd.read_csv(workspace / "output" / "attributed_sales.csv")
    assert list(output["sale_id"]) == [1, 0, 2]
    assert list(output["trigger"]) == [
        "Sales before first contact",
        "Regular Check-In",
        "Engagement Booster",
    ]


def test_main_publishes_nothing_on_validation_failure(workspace):
    (workspace / "data" / "sales.csv").write_text(
        SALES_CSV.strip() + "\nS3,X,2020-02-01,0,Ogdenville\n"
    )

    assert pipeline.main() == 1
    assert not (workspace / "output" / "attributed_sales.csv").exists()
    assert list((workspace / "dead_letter").glob("validation_failures_*.jsonl"))


def test_configure_logging_writes_run_log(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        logger, fmt = configure_logging(
            str(tmp_path / "logs" / "run.log"), logger_name="run"
        )
        logger.info("hello from the run")
        for h in root.handlers:
            h.flush()
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)

    assert logger.name == "run"
    assert fmt is not None
    assert "INFO [run] hello from the run" in (tmp_path / "logs" / "run.log").read_text()


def test_main_rejects_outreach_with_pre_contact_label(workspace):
    (workspace / "data" / "outreach.csv").write_text(
        OUTREACH_CSV.strip() + "\nS1,2020-04-01,X,Sales before first contact\n"
    )

    assert pipeline.main() == 1
    assert not (workspace / "output" / "attributed_sales.csv").exists()
    failures = list((workspace / "dead_letter").glob("validation_failures_*.jsonl"))
    records = [json.loads(line) for line in failures[0].read_text().splitlines()]
    assert [r["error"] for r in records] == ["invalid:trigger"]
