# tests/test_attribution_correctness.py
import logging
import random
from datetime import date, timedelta

import duckdb
import pandas as pd
import pytest

from outreach_windows import build_outreach_windows
from sales_attribution import PRE_CONTACT_LABEL, attribute_sales

TODAY = date(2020, 6, 1)

S1_CONTACTS = [
    ("S1", "X", "2020-01-01", "Regular Check-In"),
    ("S1", "X", "2020-03-01", "Other"),
]


@pytest.fixture()
def con():
    con = duckdb.connect(":memory:")
    try:
        yield con
    finally:
        con.close()


def _outreach(rows):
    return pd.DataFrame(
        [
            {
                "contact_id": i,
                "shop": shop,
                "product": product,
                "date": pd.Timestamp(day),
                "trigger": trigger,
            }
            for i, (shop, product, day, trigger) in enumerate(rows)
        ]
    )


def _sales(rows):
    return pd.DataFrame(
        [
            {
                "sale_id": i,
                "shop": shop,
                "product": product,
                "date_of_sell": pd.Timestamp(day),
                "units_sold": units,
                "location": f"{shop}-town",
            }
            for i, (shop, product, day, units) in enumerate(rows)
        ]
    )


def _attribute(con, outreach_rows, sales_rows):
    logger = logging.getLogger("attribution")
    windows = build_outreach_windows(con, logger, _outreach(outreach_rows), TODAY)
    return attribute_sales(con, logger, _sales(sales_rows), windows)


def test_sale_attributes_to_window_it_falls_in(con):
    pre_first, within, stats = _attribute(con, S1_CONTACTS, [("S1", "X", "2020-02-01", 5)])

    assert pre_first.empty
    assert len(within) == 1
    row = within.iloc[0]
    assert row["trigger"] == "Regular Check-In"
    assert row["date_of_previous_contact"] == pd.Timestamp("2020-01-01")
    assert row["units_sold"] == 5
    assert row["location"] == "S1-town"
    assert stats["within_window_rows"] == 1
    assert stats["unattributed_sales"] == 0


def test_sale_before_first_contact_is_marked_pre_contact(con):
    pre_first, within, stats = _attribute(con, S1_CONTACTS, [("S1", "X", "2019-12-01", 3)])

    assert within.empty
    assert len(pre_first) == 1
    row = pre_first.iloc[0]
    assert row["trigger"] == PRE_CONTACT_LABEL
    assert pd.isna(row["date_of_previous_contact"])
    assert pd.isna(row["window_start"])
    assert pd.isna(row["window_end"])
    assert row["first_contact"] == pd.Timestamp("2020-01-01")
    assert row["units_sold"] == 3
    # Two windows share the pair, only the earliest one may match
    assert stats["pre_first_joined"] == 1


def test_window_boundaries_are_inclusive(con):
    sales = [
        ("S1", "X", "2020-01-01", 1),
        ("S1", "X", "2020-02-29", 1),
        ("S1", "X", "2020-03-01", 1),
        ("S1", "X", TODAY.isoformat(), 1),
    ]
    _, within, _ = _attribute(con, S1_CONTACTS, sales)

    got = dict(zip(within["sale_id"], within["trigger"]))
    assert got == {
        0: "Regular Check-In",
        1: "Regular Check-In",
        2: "Other",
        3: "Other",
    }


def test_sale_after_today_is_not_attributed(con):
    later = (TODAY + timedelta(days=1)).isoformat()
    pre_first, within, stats = _attribute(con, S1_CONTACTS, [("S1", "X", later, 2)])

    assert pre_first.empty
    assert within.empty
    assert stats["unattributed_sales"] == 1
    assert stats["sales_without_outreach"] == 0


def test_same_day_first_contacts_collapse_to_one_pre_contact_row(con):
    contacts = [
        ("S2", "X", "2020-01-10", "Regular Check-In"),
        ("S2", "X", "2020-01-10", "Engagement Booster"),
        ("S2", "X", "2020-02-01", "Other"),
    ]
    pre_first, within, stats = _attribute(
        con,
        contacts,
        [("S2", "X", "2020-01-05", 4), ("S2", "X", "2020-01-10", 6)],
    )

    assert len(pre_first) == 1
    assert pre_first.iloc[0]["sale_id"] == 0
    assert stats["pre_first_joined"] == 2
    assert stats["pre_first_duplicates_removed"] == 1

    # The superseded same-day contact has an empty window, the later-listed one wins
    assert len(within) == 1
    assert within.iloc[0]["sale_id"] == 1
    assert within.iloc[0]["trigger"] == "Engagement Booster"
    assert stats["fanout_sales"] == 0


def test_identical_sales_rows_are_both_kept(con):
    sales = [("S1", "X", "2019-12-01", 3), ("S1", "X", "2019-12-01", 3)]
    pre_first, _, stats = _attribute(con, S1_CONTACTS, sales)

    assert sorted(pre_first["sale_id"]) == [0, 1]
    assert stats["pre_first_duplicates_removed"] == 0


def test_sales_without_outreach_are_dropped_and_counted(con, caplog):
    sales = [("S1", "X", "2020-02-01", 5), ("S9", "X", "2020-02-01", 7), ("S1", "Q", "2020-02-01", 1)]
    with caplog.at_level(logging.WARNING, logger="attribution"):
        pre_first, within, stats = _attribute(con, S1_CONTACTS, sales)

    assert set(within["sale_id"]) == {0}
    assert pre_first.empty
    assert stats["sales_without_outreach"] == 2
    assert stats["unattributed_sales"] == 2
    assert "produced no attributed row" in caplog.text


def test_attribution_invariants_hold_on_generated_data(con):
    rng = random.Random(7)
    start = date(2019, 10, 1)
    contacts = []
    for shop in ["S1", "S2", "S3", "S4", "S5"]:
        for product in ["X", "Y", "Z"]:
            for _ in range(rng.randint(1, 4)):
                day = date(2020, 1, 1) + timedelta(days=rng.randint(0, 120))
                trigger = rng.choice(["Regular Check-In", "Engagement Booster", "Other"])
                contacts.append((shop, product, day.isoformat(), trigger))
    sales = []
    for _ in range(200):
        day = start + timedelta(days=rng.randint(0, (TODAY - start).days))
        sales.append(
            (rng.choice(["S1", "S2", "S3", "S4", "S5"]), rng.choice(["X", "Y", "Z"]), day.isoformat(), rng.randint(1, 5))
        )

    pre_first, within, stats = _attribute(con, contacts, sales)

    assert (pre_first["trigger"] == PRE_CONTACT_LABEL).all()
    assert (pre_first["date_of_sell"] < pre_first["first_contact"]).all()
    assert pre_first["date_of_previous_contact"].isna().all()
    assert not pre_first["sale_id"].duplicated().any()

    assert (within["window_start"] <= within["date_of_sell"]).all()
    assert (within["date_of_sell"] <= within["window_end"]).all()
    assert (within["date_of_previous_contact"] == within["window_start"]).all()

    # Every pair has outreach, so every sale shows up at least once
    attributed = set(pre_first["sale_id"]) | set(within["sale_id"])
    assert attributed == set(range(len(sales)))
    assert stats["unattributed_sales"] == 0
    assert not set(pre_first["sale_id"]) & set(within["sale_id"])
