import logging
from typing import Dict, Tuple

import duckdb
import pandas as pd

PRE_CONTACT_LABEL = "Sales before first contact"

ATTRIBUTED_COLUMNS = [
    "sale_id",
    "shop",
    "location",
    "product",
    "date_of_sell",
    "units_sold",
    "trigger",
    "date_of_previous_contact",
    "window_start",
    "window_end",
    "first_contact",
    "total_contacts_per_shop",
    "total_contacts_per_shop_per_trigger",
]


def attribute_sales(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    sales: pd.DataFrame,
    windows: pd.DataFrame,
    pre_contact_label: str = PRE_CONTACT_LABEL,
) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, int]]:
    """
    Attribute each sale to the outreach window it falls in.

    Returns (pre_first, within_window, stats):
      - pre_first: sales dated before the first contact of their
        (shop, product), matched only against the earliest window, with the
        window fields nulled and trigger set to `pre_contact_label`.
        Exact duplicates produced by the join are removed.
      - within_window: one row per window containing the sale date; a sale
        matching several windows keeps every match.
      - stats: row and loss counters for the run log and for tests.

    Sales whose (shop, product) has no outreach at all match neither branch
    and are dropped; they are counted in stats['sales_without_outreach'].
    """
    logger.info(f"Attributing {len(sales)} sales against {len(windows)} windows...")

    con.register("sales_src", sales)
    con.register("windows_src", windows)
    try:
        con.execute(
            """
            CREATE OR REPLACE TEMP VIEW sales_typed AS
            SELECT
                sale_id,
                shop,
                location,
                product,
                CAST(date_of_sell AS DATE) AS date_of_sell,
                units_sold
            FROM sales_src;

            CREATE OR REPLACE TEMP VIEW windows_typed AS
            SELECT
                shop,
                product,
                trigger,
                CAST(first_contact AS DATE) AS first_contact,
                CAST(window_start AS DATE) AS window_start,
                CAST(window_end AS DATE) AS window_end,
                total_contacts_per_shop,
                total_contacts_per_shop_per_trigger
            FROM windows_src;
            """
        )

        # Every earliest window of the pair joins, so same-day first contacts fan out here
        con.execute(
            """
            CREATE OR REPLACE TEMP TABLE pre_first_joined AS
            SELECT
                s.sale_id,
                s.shop,
                s.location,
                s.product,
                s.date_of_sell,
                s.units_sold,
                CAST(NULL AS VARCHAR) AS trigger,
                CAST(NULL AS DATE) AS date_of_previous_contact,
                CAST(NULL AS DATE) AS window_start,
                CAST(NULL AS DATE) AS window_end,
                w.first_contact,
                w.total_contacts_per_shop,
                CAST(NULL AS BIGINT) AS total_contacts_per_shop_per_trigger
            FROM sales_typed s
            JOIN windows_typed w
              ON w.shop = s.shop
             AND w.product = s.product
            WHERE s.date_of_sell < w.first_contact
              AND w.window_start = w.first_contact;
            """
        )

        con.execute(
            """
            CREATE OR REPLACE TEMP TABLE pre_first AS
            SELECT DISTINCT * FROM pre_first_joined;

            CREATE OR REPLACE TEMP TABLE within_window AS
            SELECT
                s.sale_id,
                s.shop,
                s.location,
                s.product,
                s.date_of_sell,
                s.units_sold,
                w.trigger,
                w.window_start AS date_of_previous_contact,
                w.window_start,
                w.window_end,
                w.first_contact,
                w.total_contacts_per_shop,
                w.total_contacts_per_shop_per_trigger
            FROM sales_typed s
            JOIN windows_typed w
              ON w.shop = s.shop
             AND w.product = s.product
            WHERE w.window_start <= s.date_of_sell
              AND s.date_of_sell <= w.window_end;
            """
        )

        stats = _attribution_stats(con, len(sales))
        order_by = "ORDER BY shop, product, date_of_sell, sale_id, window_start"
        pre_first = con.execute(f"SELECT * FROM pre_first {order_by}").df()
        pre_first["trigger"] = pre_contact_label
        within_window = con.execute(f"SELECT * FROM within_window {order_by}").df()
    finally:
        con.unregister("sales_src")
        con.unregister("windows_src")

    logger.info(
        f"Attribution counts: pre_first_joined={stats['pre_first_joined']}, "
        f"pre_first_duplicates_removed={stats['pre_first_duplicates_removed']}, "
        f"pre_first_rows={stats['pre_first_rows']}, "
        f"within_window_rows={stats['within_window_rows']}, "
        f"fanout_sales={stats['fanout_sales']}"
    )
    if stats["fanout_sales"]:
        logger.info(
            f"{stats['fanout_sales']} sales matched more than one window and keep every match"
        )
    if stats["unattributed_sales"]:
        logger.warning(
            f"{stats['unattributed_sales']} of {stats['sales_rows']} sales produced no attributed row "
            f"({stats['sales_without_outreach']} have no outreach for their shop/product)"
        )

    return pre_first[ATTRIBUTED_COLUMNS], within_window[ATTRIBUTED_COLUMNS], stats


def _attribution_stats(con: duckdb.DuckDBPyConnection, sales_rows: int) -> Dict[str, int]:
    row = con.execute(
        """
        SELECT
            (SELECT COUNT(*) FROM pre_first_joined) AS pre_first_joined,
            (SELECT COUNT(*) FROM pre_first) AS pre_first_rows,
            (SELECT COUNT(*) FROM within_window) AS within_window_rows,
            (
                SELECT COUNT(*) FROM (
                    SELECT sale_id FROM within_window
                    GROUP BY sale_id HAVING COUNT(*) > 1
                )
            ) AS fanout_sales,
            (
                SELECT COUNT(*) FROM sales_typed s
                WHERE s.sale_id NOT IN (SELECT sale_id FROM pre_first)
                  AND s.sale_id NOT IN (SELECT sale_id FROM within_window)
            ) AS unattributed_sales,
            (
                SELECT COUNT(*) FROM sales_typed s
                LEFT JOIN (SELECT DISTINCT shop, product FROM windows_typed) w
                  ON w.shop = s.shop AND w.product = s.product
                WHERE w.shop IS NULL
            ) AS sales_without_outreach;
        """
    ).fetchone()
    pre_first_joined, pre_first_rows, within_rows, fanout, unattributed, no_outreach = row
    return {
        "sales_rows": sales_rows,
        "pre_first_joined": int(pre_first_joined),
        "pre_first_duplicates_removed": int(pre_first_joined - pre_first_rows),
        "pre_first_rows": int(pre_first_rows),
        "within_window_rows": int(within_rows),
        "fanout_sales": int(fanout),
        "unattributed_sales": int(unattributed),
        "sales_without_outreach": int(no_outreach),
    }
