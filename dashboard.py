# dashboard.py - operator view of recent orders and audit events
from html import escape
from typing import Dict, List

from models import AuditEvent

FAILURE_TYPES = {"email_failed", "download_failed", "regen_failed", "webhook_invalid"}
SUCCESS_TYPES = {"email_sent", "download_success"}


def _tag_class(event_type: str) -> str:
    if event_type in FAILURE_TYPES:
        return "tag tag--bad"
    if event_type in SUCCESS_TYPES:
        return "tag tag--good"
    return "tag"


def render_dashboard(events: List[AuditEvent], orders: List[Dict]) -> str:
    event_rows = "\n".join(
        f"""
        <tr>
            <td>{escape(e.created_at.isoformat())}</td>
            <td><span class="{_tag_class(e.type.value)}">{escape(e.type.value)}</span></td>
            <td>{e.order_id if e.order_id is not None else '-'}</td>
            <td>{escape(e.message or '')}</td>
        </tr>"""
        for e in events
    )
    order_rows = "\n".join(
        f"""
        <tr>
            <td>{o['order_id']}</td>
            <td>{escape(o['last_event_at'].isoformat())}</td>
        </tr>"""
        for o in orders
    )

    return f"""
    <!doctype html>
    <html lang="en">
    <head>
        <meta charset="utf-8" />
        <meta name="viewport" content="width=device-width, initial-scale=1" />
        <title>Ebook Delivery Dashboard</title>
        <style>
            body {{ font-family: "Segoe UI", "Helvetica Neue", Arial, sans-serif; background: #f6f4ef; color: #121212; margin: 0; padding: 28px; }}
            h1 {{ margin: 0 0 4px 0; font-size: 24px; }}
            .grid {{ display: grid; gap: 16px; grid-template-columns: repeat(auto-fit, minmax(240px, 1fr)); }}
            .card {{ background: #ffffff; border: 1px solid #e3ded3; border-radius: 14px; padding: 16px; }}
            table {{ width: 100%; border-collapse: collapse; font-size: 14px; }}
            th, td {{ text-align: left; padding: 10px; border-bottom: 1px solid #e3ded3; }}
            th {{ color: #6b6b6b; font-weight: 600; }}
            .tag {{ display: inline-block; padding: 2px 8px; border-radius: 999px; font-size: 12px; background: #e8efe9; color: #1f4b3b; }}
            .tag--bad {{ background: #fde8e8; color: #a11d1d; }}
            .tag--good {{ background: #e9f6ef; color: #1a6a3f; }}
        </style>
    </head>
    <body>
        <header>
            <h1>Ebook Delivery Dashboard</h1>
            <p>Live status for webhook events, email delivery, and download activity.</p>
        </header>
        <div class="grid">
            <div class="card">
                <h2>Recent Orders</h2>
                <table>
                    <thead><tr><th>Order ID</th><th>Last Activity</th></tr></thead>
                    <tbody>{order_rows or '<tr><td colspan="2">No orders yet.</td></tr>'}</tbody>
                </table>
            </div>
            <div class="card">
                <h2>Events</h2>
                <table>
                    <thead><tr><th>Time</th><th>Type</th><th>Order</th><th>Message</th></tr></thead>
                    <tbody>{event_rows or '<tr><td colspan="4">No events yet.</td></tr>'}</tbody>
                </table>
            </div>
        </div>
    </body>
    </html>
    """
