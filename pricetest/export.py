import io
from typing import Any, Dict, List

import pandas as pd

PERFORMANCE_COLUMNS = [
    "Variant",
    "Label",
    "Price",
    "Visitors",
    "Conversions",
    "Add to Cart",
    "Conversion Rate (%)",
    "Revenue ($)",
    "Revenue per Visitor ($)",
    "Traffic Percentage (%)",
    "Is Control",
]


def _performance_frame(performance: List[Dict[str, Any]]) -> pd.DataFrame:
    rows = [
        {
            "Variant": p["variation"],
            "Label": p["label"],
            "Price": p["price"],
            "Visitors": p["visitors"],
            "Conversions": p["conversions"],
            "Add to Cart": p["addToCart"],
            "Conversion Rate (%)": f"{p['conversionRate']:.2f}",
            "Revenue ($)": f"{p['revenue']:.2f}",
            "Revenue per Visitor ($)": f"{p['revenuePerVisitor']:.2f}",
            "Traffic Percentage (%)": f"{float(p['trafficPercentage']):.1f}",
            "Is Control": "Yes" if p["isControl"] else "No",
        }
        for p in performance
    ]
    return pd.DataFrame(rows, columns=PERFORMANCE_COLUMNS)


def _series_frame(chart_data: List[Dict[str, Any]], labels: List[str]) -> pd.DataFrame:
    rows = []
    for day in chart_data:
        row: Dict[str, Any] = {"Date": day["date"]}
        for label in labels:
            row[f"{label} Conversions"] = day.get(f"{label}_conversions", 0)
        for label in labels:
            row[f"{label} Revenue"] = f"{day.get(f'{label}_revenue', 0):.2f}"
        rows.append(row)
    return pd.DataFrame(rows)


def analytics_to_csv(analytics: Dict[str, Any]) -> str:
    """
    CSV download of an analytics payload: one row per variation, a SUMMARY
    block and the daily series.
    """
    performance = analytics.get("variationPerformance") or []
    kpis = analytics["kpis"]

    out = io.StringIO()
    _performance_frame(performance).to_csv(out, index=False, lineterminator="\n")

    out.write("\nSUMMARY\n")
    out.write(f"Total Visitors,{kpis['totalVisitors']}\n")
    out.write(f"Total Conversions,{kpis['totalConversions']}\n")
    out.write(f"Total Revenue,${kpis['totalRevenue']:.2f}\n")
    out.write(f"Overall Conversion Rate,{kpis['conversionRate']:.2f}%\n")
    out.write(f"Revenue per Visitor,${kpis['revenuePerVisitor']:.2f}\n")

    chart_data = analytics.get("chartData") or []
    if chart_data:
        out.write("\nTIME SERIES DATA\n")
        labels = [p["variation"] for p in performance]
        _series_frame(chart_data, labels).to_csv(out, index=False, lineterminator="\n")

    return out.getvalue()
