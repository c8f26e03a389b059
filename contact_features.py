import logging
from typing import List, Sequence

import duckdb
import pandas as pd

QUINTILE_PROBABILITIES = [0.0, 0.2, 0.4, 0.6, 0.8, 1.0]


class BucketRangeError(ValueError):
    """A shop's contact count cannot be placed in any quintile bucket."""


def shop_contact_counts(windows: pd.DataFrame) -> pd.DataFrame:
    """One row per distinct shop with its total outreach contacts."""
    return (
        windows[["shop", "total_contacts_per_shop"]]
        .drop_duplicates(subset="shop")
        .sort_values("shop")
        .reset_index(drop=True)
    )


def compute_quintile_boundaries(
    shop_counts: pd.DataFrame, probabilities: Sequence[float] = QUINTILE_PROBABILITIES
) -> List[float]:
    """
    Empirical quantiles of total_contacts_per_shop across distinct shops.

    Linear interpolation between order statistics (the common "type 7"
    definition), evaluated at the given probabilities.
    """
    counts = shop_counts["total_contacts_per_shop"].astype(float)
    if counts.empty:
        raise BucketRangeError("Cannot compute quintile boundaries without any shops")
    return [float(v) for v in counts.quantile(list(probabilities), interpolation="linear")]


def format_bucket_labels(boundaries: Sequence[float]) -> List[str]:
    """
    Label each bucket generically from its boundaries.

    Integer boundaries give the contact counts each bucket holds, so
    [1, 4], (4, 7] reads "1-4", "5-7". Fractional boundaries fall back to
    interval notation: "[2,2.2]", "(2.2,2.4]".
    """
    pairs = list(zip(boundaries, boundaries[1:]))
    if all(float(b).is_integer() for b in boundaries):
        return [
            f"{int(lo) if i == 0 else int(lo) + 1}-{int(hi)}"
            for i, (lo, hi) in enumerate(pairs)
        ]
    return [
        f"{'[' if i == 0 else '('}{float(lo):g},{float(hi):g}]"
        for i, (lo, hi) in enumerate(pairs)
    ]


def assign_contact_buckets(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    shop_counts: pd.DataFrame,
    boundaries: Sequence[float],
    labels: Sequence[str],
) -> pd.DataFrame:
    """
    Place every shop in a contact-count bucket.

    Buckets are closed on the right, and the first one is also closed on the
    left: [b0, b1], (b1, b2], ..., (b4, b5]. Returns shop,
    total_contacts_per_shop and an ordered categorical total_contacts_amount.
    Raises BucketRangeError when boundaries are not strictly increasing or any
    shop has a null, zero or out-of-range count.
    """
    if len(boundaries) != len(labels) + 1:
        raise BucketRangeError(
            f"{len(boundaries)} boundaries cannot delimit {len(labels)} buckets"
        )
    if any(lo >= hi for lo, hi in zip(boundaries, boundaries[1:])):
        raise BucketRangeError(f"Bucket boundaries are not unique: {list(boundaries)}")

    buckets = pd.DataFrame(
        {
            "bucket": range(len(labels)),
            "lower": [float(b) for b in boundaries[:-1]],
            "upper": [float(b) for b in boundaries[1:]],
            "label": list(labels),
        }
    )

    con.register("shop_counts_src", shop_counts)
    con.register("buckets_src", buckets)
    try:
        assigned = con.execute(
            """
            SELECT
                c.shop,
                c.total_contacts_per_shop,
                b.label AS total_contacts_amount
            FROM shop_counts_src c
            LEFT JOIN buckets_src b
              ON c.total_contacts_per_shop > 0
             AND c.total_contacts_per_shop <= b.upper
             AND (
                    c.total_contacts_per_shop > b.lower
                 OR (b.bucket = 0 AND c.total_contacts_per_shop >= b.lower)
             )
            ORDER BY c.shop;
            """
        ).df()
    finally:
        con.unregister("shop_counts_src")
        con.unregister("buckets_src")

    out_of_range = assigned[assigned["total_contacts_amount"].isna()]
    if not out_of_range.empty:
        offenders = ", ".join(
            f"{shop}={count}"
            for shop, count in zip(
                out_of_range["shop"], out_of_range["total_contacts_per_shop"]
            )
        )
        raise BucketRangeError(
            f"{len(out_of_range)} shops fall outside contact buckets "
            f"[{boundaries[0]}, {boundaries[-1]}]: {offenders}"
        )

    assigned["total_contacts_amount"] = pd.Categorical(
        assigned["total_contacts_amount"], categories=list(labels), ordered=True
    )
    logger.info(
        "Contact buckets assigned: "
        + ", ".join(
            f"{label}={n}"
            for label, n in assigned["total_contacts_amount"]
            .value_counts(sort=False)
            .items()
        )
    )
    return assigned


def resolve_buckets(
    logger: logging.Logger,
    shop_counts: pd.DataFrame,
    mode: str = "fixed",
    boundaries: Sequence[float] = None,
    labels: Sequence[str] = None,
    version: str = None,
    probabilities: Sequence[float] = QUINTILE_PROBABILITIES,
):
    """
    Pick the (boundaries, labels) used for bucketing.

    'fixed' keeps the pinned snapshot boundaries and warns when the live data
    would produce different ones; 'dynamic' recomputes both from the data.
    """
    live = compute_quintile_boundaries(shop_counts, probabilities)
    if mode == "dynamic":
        live_labels = format_bucket_labels(live)
        logger.info(f"Dynamic contact buckets: boundaries={live}, labels={live_labels}")
        return live, live_labels

    if mode != "fixed":
        raise ValueError(f"Unknown bucket mode: {mode!r}")
    if boundaries is None or labels is None:
        raise ValueError("Fixed bucket mode needs boundaries and labels")
    if [float(b) for b in boundaries] != live:
        logger.warning(
            f"Pinned contact buckets (version {version}) differ from live quintiles: "
            f"pinned={list(boundaries)}, live={live}"
        )
    return list(boundaries), list(labels)
