import logging
from datetime import date
from typing import Dict, Mapping, Sequence, Tuple

import duckdb
import pandas as pd

from contact_features import (
    QUINTILE_PROBABILITIES,
    assign_contact_buckets,
    resolve_buckets,
    shop_contact_counts,
)
from loaders import SchemaValidationError
from outreach_windows import build_outreach_windows, check_window_contiguity
from sales_attribution import ATTRIBUTED_COLUMNS, PRE_CONTACT_LABEL, attribute_sales

TRIGGER_LEVELS = [
    "Regular Check-In",
    "Other",
    "Engagement Booster",
    PRE_CONTACT_LABEL,
]

DATASET_COLUMNS = ATTRIBUTED_COLUMNS + ["total_contacts_amount", "image_url"]

DEFAULT_IMAGE = "images/default.png"


def assemble_dataset(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    pre_first: pd.DataFrame,
    within_window: pd.DataFrame,
    buckets: pd.DataFrame,
    image_lookup: Mapping[str, str] = None,
    default_image: str = DEFAULT_IMAGE,
    trigger_levels: Sequence[str] = TRIGGER_LEVELS,
) -> pd.DataFrame:
    """
    Union both attribution branches into the canonical analytical table,
    attaching each shop's contact bucket and each product's image.
    """
    images = pd.DataFrame(
        list((image_lookup or {}).items()), columns=["product", "image_url"]
    ).astype({"product": "object", "image_url": "object"})
    bucket_labels = list(buckets["total_contacts_amount"].cat.categories)
    shop_buckets = buckets[["shop", "total_contacts_amount"]].astype(
        {"total_contacts_amount": "object"}
    )

    con.register("pre_first_src", pre_first)
    con.register("within_window_src", within_window)
    con.register("shop_buckets_src", shop_buckets)
    con.register("images_src", images)
    try:
        dataset = con.execute(
            """
            WITH attributed AS (
                SELECT * FROM pre_first_src
                UNION ALL BY NAME
                SELECT * FROM within_window_src
            )
            SELECT
                a.sale_id,
                a.shop,
                a.location,
                a.product,
                CAST(a.date_of_sell AS DATE) AS date_of_sell,
                a.units_sold,
                a.trigger,
                CAST(a.date_of_previous_contact AS DATE) AS date_of_previous_contact,
                CAST(a.window_start AS DATE) AS window_start,
                CAST(a.window_end AS DATE) AS window_end,
                CAST(a.first_contact AS DATE) AS first_contact,
                a.total_contacts_per_shop,
                a.total_contacts_per_shop_per_trigger,
                b.total_contacts_amount,
                COALESCE(i.image_url, ?) AS image_url
            FROM attributed a
            LEFT JOIN shop_buckets_src b ON b.shop = a.shop
            LEFT JOIN images_src i ON i.product = a.product
            ORDER BY a.shop, a.product, a.date_of_sell, a.sale_id, a.window_start NULLS FIRST;
            """,
            [default_image],
        ).df()
    finally:
        for name in ("pre_first_src", "within_window_src", "shop_buckets_src", "images_src"):
            con.unregister(name)

    unbucketed = int(dataset["total_contacts_amount"].isna().sum())
    if unbucketed:
        # Attributed shops always come from the windows the buckets were built on
        raise ValueError(f"{unbucketed} attributed rows have no contact bucket")

    dataset["trigger"] = pd.Categorical(
        dataset["trigger"], categories=list(trigger_levels), ordered=True
    )
    dataset["total_contacts_amount"] = pd.Categorical(
        dataset["total_contacts_amount"], categories=bucket_labels, ordered=True
    )
    dataset["total_contacts_per_shop_per_trigger"] = dataset[
        "total_contacts_per_shop_per_trigger"
    ].astype("Int64")

    logger.info(
        f"Dataset assembled: rows={len(dataset)} "
        f"(pre_first={len(pre_first)}, within_window={len(within_window)}), "
        f"shops={dataset['shop'].nunique()}, products={dataset['product'].nunique()}"
    )
    return dataset[DATASET_COLUMNS]


def build_dataset(
    outreach: pd.DataFrame,
    sales: pd.DataFrame,
    logger: logging.Logger,
    today: date = None,
    bucket_mode: str = "fixed",
    bucket_boundaries: Sequence[float] = None,
    bucket_labels: Sequence[str] = None,
    bucket_version: str = None,
    bucket_probabilities: Sequence[float] = QUINTILE_PROBABILITIES,
    image_lookup: Mapping[str, str] = None,
    default_image: str = DEFAULT_IMAGE,
    pre_contact_label: str = PRE_CONTACT_LABEL,
    trigger_levels: Sequence[str] = TRIGGER_LEVELS,
) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """
    Run windowing, attribution, bucketing and assembly over one snapshot.

    Returns (dataset, stats). Any stage failure propagates, so callers never
    see a partially built dataset.
    """
    today = today or date.today()
    if (outreach["trigger"] == pre_contact_label).any():
        raise SchemaValidationError(
            f"outreach: trigger '{pre_contact_label}' is reserved for sales before first contact"
        )
    logger.info(f"--- Building attribution dataset (today={today}) ---")

    con = duckdb.connect(database=":memory:")
    try:
        windows = build_outreach_windows(con, logger, outreach, today)
        broken = check_window_contiguity(windows, today)
        if broken:
            # Only contacts dated after `today` can break coverage
            logger.warning(
                f"{len(broken)} shop/product pairs have windows not covering up to {today}: "
                f"{broken[:5]}"
            )

        pre_first, within_window, stats = attribute_sales(
            con, logger, sales, windows, pre_contact_label=pre_contact_label
        )

        counts = shop_contact_counts(windows)
        boundaries, labels = resolve_buckets(
            logger,
            counts,
            mode=bucket_mode,
            boundaries=bucket_boundaries,
            labels=bucket_labels,
            version=bucket_version,
            probabilities=bucket_probabilities,
        )
        buckets = assign_contact_buckets(con, logger, counts, boundaries, labels)

        dataset = assemble_dataset(
            con,
            logger,
            pre_first,
            within_window,
            buckets,
            image_lookup=image_lookup,
            default_image=default_image,
            trigger_levels=trigger_levels,
        )
    except Exception as e:
        logger.error(f"An error occurred while building the attribution dataset: {e}")
        raise  # No partial dataset; the caller decides how the run ends
    finally:
        con.close()

    stats["dataset_rows"] = len(dataset)
    stats["windows"] = len(windows)
    logger.info("--- Attribution dataset built ---")
    return dataset, stats


def build_dataset_from_config(
    cfg, outreach: pd.DataFrame, sales: pd.DataFrame, logger: logging.Logger, today: date = None
) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """build_dataset with every parameter read from a ConfigLoader."""
    return build_dataset(
        outreach,
        sales,
        logger,
        today=today or cfg.get_today(),
        bucket_mode=cfg.get("quintiles.mode", "fixed"),
        bucket_boundaries=cfg.get("quintiles.boundaries"),
        bucket_labels=cfg.get("quintiles.labels"),
        bucket_version=cfg.get("quintiles.version"),
        bucket_probabilities=cfg.get("quintiles.probabilities", QUINTILE_PROBABILITIES),
        image_lookup=cfg.get("images.products", {}),
        default_image=cfg.get("images.default", DEFAULT_IMAGE),
        pre_contact_label=cfg.get("attribution.pre_contact_label", PRE_CONTACT_LABEL),
        trigger_levels=cfg.get("attribution.trigger_levels", TRIGGER_LEVELS),
    )
