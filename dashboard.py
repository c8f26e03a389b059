import os
from datetime import datetime

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import streamlit as st
from dotenv import load_dotenv

from config_loader import load_config
from logging_utils import configure_logging
from pipeline import get_dataset
from views import (
    bottom_sellers,
    filter_by_shop_sales,
    frequency_effectiveness,
    product_ranking,
    summary_stats,
    top_sellers,
    trigger_effectiveness,
)

st.set_page_config(
    page_title="Retailer Outreach Effectiveness",
    page_icon="📞",
    layout="wide",
)


@st.cache_resource
def load_dataset() -> pd.DataFrame:
    """Build once per server process; every session reads the same frame."""
    load_dotenv()
    cfg = load_config()
    run_ts = datetime.now().strftime(cfg.get("run_ts_format", "%Y%m%d_%H%M%S"))
    logger, _ = configure_logging(
        f"{cfg.get('paths.logs_dir', 'logs')}/dashboard_{run_ts}.log",
        logger_name="dashboard",
    )
    dataset, _stats = get_dataset(
        cfg, logger, run_ts=run_ts, use_cache=os.getenv("NO_CACHE") is None
    )
    return dataset


def format_number(value: float) -> str:
    if pd.isna(value):
        return "N/A"
    return f"{value:,.1f}"


def create_bar(data, x, y, title):
    if data.empty:
        st.info(f"No data available for {title.lower()}.")
        return
    fig = px.bar(data, x=x, y=y, title=title, text_auto=".1f")
    fig.update_layout(height=430, xaxis_title=None, yaxis_title="Avg units per shop")
    st.plotly_chart(fig, use_container_width=True)


def create_lollipop(data, title):
    if data.empty:
        st.info(f"No data available for {title.lower()}.")
        return
    data = data.sort_values("units_sold")
    fig = go.Figure()
    for product, units in zip(data["product"], data["units_sold"]):
        fig.add_trace(
            go.Scatter(
                x=[0, units],
                y=[product, product],
                mode="lines",
                line=dict(color="lightgray"),
                showlegend=False,
                hoverinfo="skip",
            )
        )
    fig.add_trace(
        go.Scatter(
            x=data["units_sold"],
            y=data["product"],
            mode="markers",
            marker=dict(size=12),
            showlegend=False,
        )
    )
    fig.update_layout(title=title, height=430, xaxis_title="Units sold")
    st.plotly_chart(fig, use_container_width=True)


def seller_table(data: pd.DataFrame, empty_message: str):
    if data.empty:
        st.info(empty_message)
        return
    st.dataframe(data, use_container_width=True, hide_index=True)


try:
    dataset = load_dataset()
except Exception as e:
    st.error(f"Unable to build the attribution dataset. {e}")
    st.stop()

cfg = load_config()
range_min = cfg.get("dashboard.sales_range.min", 1)
range_max = cfg.get("dashboard.sales_range.max", 46)
top_n = cfg.get("dashboard.top_n", 20)

st.sidebar.header("Filters")
low, high = st.sidebar.slider(
    "Total units sold per shop",
    min_value=range_min,
    max_value=range_max,
    value=(range_min, range_max),
)
view = filter_by_shop_sales(dataset, low, high)
st.sidebar.markdown("---")
st.sidebar.caption(f"Filtered rows: {len(view):,}")

st.title("Retailer Outreach Effectiveness")

stats = summary_stats(view)
col1, col2 = st.columns(2)
col1.metric("Mean Units Sold per Shop", format_number(stats["mean_shop_sales"]))
col2.metric("Total Units Sold", f"{stats['total_units_sold']:,}")
if stats["is_empty"]:
    st.warning("No shops match the selected sales range. Widen the range to continue.")

chart_left, chart_right = st.columns(2)
with chart_left:
    create_bar(
        trigger_effectiveness(view).astype({"trigger": str}),
        "trigger",
        "avg_units_per_shop",
        "Effectiveness by Trigger Type",
    )
with chart_right:
    create_bar(
        frequency_effectiveness(view).astype({"total_contacts_amount": str}),
        "total_contacts_amount",
        "avg_units_per_shop",
        "Effectiveness by Contact Frequency",
    )

create_lollipop(product_ranking(view), "Units Sold by Product")

table_left, table_right = st.columns(2)
with table_left:
    st.markdown(f"### Top {top_n} Sellers")
    seller_table(top_sellers(view, top_n), "No shops for the current filter.")
with table_right:
    st.markdown(f"### Bottom {top_n} Sellers")
    seller_table(bottom_sellers(view, top_n), "No shops for the current filter.")

st.markdown("### All Attributed Sales")
if view.empty:
    st.info("No attributed sales for the current filter.")
else:
    st.dataframe(
        view,
        use_container_width=True,
        hide_index=True,
        column_config={"image_url": st.column_config.ImageColumn("Product")},
    )
