import logging
from datetime import date
from typing import List, Tuple

import duckdb
import pandas as pd


def build_outreach_windows(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    outreach: pd.DataFrame,
    today: date,
) -> pd.DataFrame:
    """
    Turn the outreach log into one contact window per outreach row.

    Within each (shop, product) partition, ordered by date and then by the
    row's position in the log (contact_id):
      - first_contact is the earliest contact date of the partition
      - window_start is the contact's own date
      - window_end is the next contact's date minus one day, or `today`
        for the latest contact
    Same-day contacts stay separate rows; every one but the last of the day
    gets a window ending the day before it starts, so it never matches a sale.

    Contact counts are computed over the whole log, per shop and per
    (shop, trigger), independent of product.
    """
    logger.info(f"Building outreach windows from {len(outreach)} contacts...")

    con.register("outreach_src", outreach)
    try:
        windows = con.execute(
            """
            WITH contacts AS (
                SELECT
                    contact_id,
                    shop,
                    product,
                    CAST(date AS DATE) AS date,
                    trigger
                FROM outreach_src
            )
            SELECT
                contact_id,
                shop,
                product,
                date,
                trigger,
                MIN(date) OVER (PARTITION BY shop, product) AS first_contact,
                date AS window_start,
                COALESCE(
                    LEAD(date) OVER (
                        PARTITION BY shop, product
                        ORDER BY date, contact_id
                    ) - 1,
                    CAST(? AS DATE)
                ) AS window_end,
                COUNT(*) OVER (PARTITION BY shop) AS total_contacts_per_shop,
                COUNT(*) OVER (PARTITION BY shop, trigger) AS total_contacts_per_shop_per_trigger
            FROM contacts
            ORDER BY shop, product, window_start, contact_id;
            """,
            [today],
        ).df()
    finally:
        con.unregister("outreach_src")

    empty_windows = int((windows["window_end"] < windows["window_start"]).sum())
    logger.info(
        f"Outreach windows built: windows={len(windows)}, "
        f"shop_product_pairs={windows[['shop', 'product']].drop_duplicates().shape[0]}, "
        f"same_day_superseded={empty_windows}"
    )
    return windows


def check_window_contiguity(
    windows: pd.DataFrame, today: date
) -> List[Tuple[str, str]]:
    """
    Return the (shop, product) pairs whose windows are not contiguous,
    overlap, or fail to cover [first_contact, today]. Empty list when sound.
    """
    today_ts = pd.Timestamp(today)
    one_day = pd.Timedelta(days=1)
    broken = []
    for (shop, product), group in windows.groupby(["shop", "product"], sort=True):
        group = group.sort_values(["window_start", "contact_id"])
        starts = list(group["window_start"])
        ends = list(group["window_end"])

        ok = starts[0] == group["first_contact"].iloc[0] and ends[-1] == today_ts
        for prev_end, next_start in zip(ends, starts[1:]):
            if prev_end + one_day != next_start:
                ok = False
                break
        if not ok:
            broken.append((shop, product))
    return broken
