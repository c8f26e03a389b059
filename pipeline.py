import hashlib
import json
import logging
import os
import sys
from datetime import date, datetime
from typing import Dict, Tuple

import pandas as pd
from diskcache import Cache
from dotenv import load_dotenv

from config_loader import load_config
from dataset_assembly import build_dataset_from_config
from loaders import load_outreach, load_sales
from logging_utils import configure_logging


def file_fingerprint(path: str) -> str:
    """SHA-256 of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


BUILD_SECTIONS = ("attribution", "quintiles", "images")


def config_fingerprint(cfg) -> str:
    """SHA-256 of every config section the dataset build reads."""
    payload = json.dumps({k: cfg.get(k) for k in BUILD_SECTIONS}, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def dataset_cache_key(cfg, outreach_path: str, sales_path: str, today: date) -> str:
    """Cache key over both input files, the run date and the build config sections."""
    return ":".join(
        [
            "dataset",
            file_fingerprint(outreach_path),
            file_fingerprint(sales_path),
            today.isoformat(),
            config_fingerprint(cfg),
        ]
    )


def outreach_trigger_levels(cfg):
    """Triggers an outreach row may carry: the domain minus the synthetic pre-contact label."""
    pre_contact_label = cfg.get("attribution.pre_contact_label")
    return [t for t in cfg.get("attribution.trigger_levels", []) if t != pre_contact_label]


def get_dataset(
    cfg, logger: logging.Logger, run_ts: str = None, use_cache: bool = True
) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """
    Load both inputs and build the attributed dataset, reusing a cached build
    when neither input nor configuration changed.
    """
    run_ts = run_ts or datetime.now().strftime(cfg.get("run_ts_format", "%Y%m%d_%H%M%S"))
    outreach_path = str(cfg.get_path("paths.outreach_file"))
    sales_path = str(cfg.get_path("paths.sales_file"))
    today = cfg.get_today() or date.today()

    cache = None
    key = None
    if use_cache:
        cache = Cache(str(cfg.get_path("paths.cache_dir", create=True)))
        key = dataset_cache_key(cfg, outreach_path, sales_path, today)

    try:
        if cache is not None:
            cached = cache.get(key)
            if cached is not None:
                logger.info(f"Reusing cached dataset for key {key[:40]}...")
                return cached

        dlq_path = os.path.join(
            cfg.get("paths.dead_letter_dir", "dead_letter"),
            f"validation_failures_{run_ts}.jsonl",
        )
        outreach = load_outreach(
            outreach_path,
            logger,
            dlq_path=dlq_path,
            trigger_levels=outreach_trigger_levels(cfg),
        )
        sales = load_sales(sales_path, logger, dlq_path=dlq_path)

        dataset, stats = build_dataset_from_config(cfg, outreach, sales, logger, today=today)

        if cache is not None:
            cache.set(key, (dataset, stats), expire=cfg.get("cache.ttl_seconds", 86400))
            logger.info("Cached dataset build.")
        return dataset, stats
    finally:
        if cache is not None:
            cache.close()


def write_dataset(dataset: pd.DataFrame, output_path: str, logger: logging.Logger):
    out_dir = os.path.dirname(output_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    # Atomic replace; readers see the old file or the new one
    tmp_path = f"{output_path}.tmp"
    dataset.to_csv(tmp_path, index=False)
    os.replace(tmp_path, output_path)
    logger.info(f"Wrote {len(dataset)} rows to {output_path}")


def main() -> int:
    load_dotenv()
    cfg = load_config()

    run_ts = os.getenv("RUN_TS") or datetime.now().strftime(
        cfg.get("run_ts_format", "%Y%m%d_%H%M%S")
    )
    logger, _fmt = configure_logging(
        f"{cfg.get('paths.logs_dir', 'logs')}/pipeline_{run_ts}.log",
        logger_name="pipeline",
    )
    logger.info("--- Starting Attribution Pipeline ---")

    try:
        dataset, stats = get_dataset(
            cfg, logger, run_ts=run_ts, use_cache=os.getenv("NO_CACHE") is None
        )
        write_dataset(dataset, str(cfg.get_path("paths.output_file")), logger)
    except Exception as e:
        logger.error(f"Attribution pipeline failed, no dataset published: {e}", exc_info=True)
        return 1

    for name, value in stats.items():
        logger.info(f"  - {name}: {value}")
    logger.info("--- Attribution Pipeline Finished ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
