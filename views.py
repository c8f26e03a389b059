"""
Read-only queries behind the dashboard.

Every function takes the canonical dataset (or a filtered view of it) and
returns a new frame or dict; none of them modifies its input, so a single
precomputed dataset can back any number of concurrent viewers.
"""
from typing import Dict

import numpy as np
import pandas as pd


def shop_totals(dataset: pd.DataFrame) -> pd.DataFrame:
    """Units sold per shop, with the shop's location, largest first."""
    if dataset.empty:
        return pd.DataFrame(columns=["shop", "location", "units_sold"])
    return (
        dataset.groupby("shop", as_index=False, observed=True)
        .agg(location=("location", "first"), units_sold=("units_sold", "sum"))
        .sort_values(["units_sold", "shop"], ascending=[False, True])
        .reset_index(drop=True)
    )


def filter_by_shop_sales(dataset: pd.DataFrame, low: int, high: int) -> pd.DataFrame:
    """Rows of the shops whose total units sold lie within [low, high]."""
    totals = dataset.groupby("shop", observed=True)["units_sold"].sum()
    keep = totals[(totals >= low) & (totals <= high)].index
    return dataset[dataset["shop"].isin(keep)].copy()


def summary_stats(view: pd.DataFrame) -> Dict[str, object]:
    """
    Headline numbers for the value boxes.

    mean_shop_sales is NaN for an empty view; is_empty says so explicitly
    so the UI can show an empty state instead of a number.
    """
    totals = shop_totals(view)
    if totals.empty:
        return {
            "mean_shop_sales": np.nan,
            "total_units_sold": 0,
            "shop_count": 0,
            "is_empty": True,
        }
    return {
        "mean_shop_sales": float(totals["units_sold"].mean()),
        "total_units_sold": int(totals["units_sold"].sum()),
        "shop_count": int(len(totals)),
        "is_empty": False,
    }


def product_ranking(view: pd.DataFrame) -> pd.DataFrame:
    """Units sold per product, largest first (lollipop chart)."""
    if view.empty:
        return pd.DataFrame(columns=["product", "image_url", "units_sold"])
    return (
        view.groupby("product", as_index=False)
        .agg(image_url=("image_url", "first"), units_sold=("units_sold", "sum"))
        .sort_values(["units_sold", "product"], ascending=[False, True])
        .reset_index(drop=True)
    )


def _average_of_shop_sums(view: pd.DataFrame, by: str) -> pd.DataFrame:
    if view.empty:
        return pd.DataFrame(columns=[by, "avg_units_per_shop", "shops"])
    per_shop = view.groupby([by, "shop"], observed=True, as_index=False)[
        "units_sold"
    ].sum()
    out = (
        per_shop.groupby(by, observed=True)
        .agg(avg_units_per_shop=("units_sold", "mean"), shops=("shop", "nunique"))
        .reset_index()
    )
    # Categorical group keys keep their presentation order
    return out.sort_values(by).reset_index(drop=True)


def trigger_effectiveness(view: pd.DataFrame) -> pd.DataFrame:
    """Average, over shops, of units sold per trigger type."""
    return _average_of_shop_sums(view, "trigger")


def frequency_effectiveness(view: pd.DataFrame) -> pd.DataFrame:
    """Average, over shops, of units sold per contact-count bucket."""
    return _average_of_shop_sums(view, "total_contacts_amount")


def top_sellers(view: pd.DataFrame, n: int = 20) -> pd.DataFrame:
    return shop_totals(view).head(n).reset_index(drop=True)


def bottom_sellers(view: pd.DataFrame, n: int = 20) -> pd.DataFrame:
    return (
        shop_totals(view)
        .sort_values(["units_sold", "shop"], ascending=[True, True])
        .head(n)
        .reset_index(drop=True)
    )
