"""
Message formatting for Slack and email.

Builds Slack block-kit payloads and HTML email bodies; no I/O.
"""

import html
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional


HIGH_PRIORITY_IMPACT = 50.0  # $/month
MAX_LISTED_OPPORTUNITIES = 5
TRACEBACK_PREVIEW_CHARS = 500


@dataclass
class OpportunityNotice:
    """Opportunity as shown in alerts."""
    id: str
    title: str
    opportunity_type: str
    estimated_revenue_impact: Optional[float]
    confidence: float
    page_url: Optional[str] = None

    @property
    def impact(self) -> float:
        return self.estimated_revenue_impact or 0.0


@dataclass
class RunNotice:
    """Outcome of a detection/agent run."""
    run_type: str
    status: str
    duration_ms: float
    items_processed: int
    opportunities_found: int
    errors_encountered: int
    log_summary: Optional[str] = None


@dataclass
class DailyDigestStats:
    """Yesterday's opportunity activity."""
    date: date
    new_opportunities: int
    approved_opportunities: int
    rejected_opportunities: int
    implemented_opportunities: int
    total_estimated_impact: float
    top_opportunities: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class WeeklyReportStats:
    """Seven days of opportunity and action activity."""
    week_start: date
    week_end: date
    total_opportunities: int
    implemented_count: int
    total_estimated_impact: float
    prediction_accuracy: Optional[float] = None
    top_performing_actions: list[dict[str, Any]] = field(default_factory=list)
    by_day_breakdown: list[dict[str, Any]] = field(default_factory=list)


def escape_mrkdwn(text: str) -> str:
    """Escape the characters Slack treats as control sequences."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def humanize(identifier: str) -> str:
    """ADD_AFFILIATE_LINK -> ADD AFFILIATE LINK"""
    return identifier.replace("_", " ")


def format_duration(ms: float) -> str:
    """Format milliseconds as ms/s/m/h."""
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    if ms < 3_600_000:
        return f"{ms / 60_000:.1f}m"
    return f"{ms / 3_600_000:.1f}h"


def truncate(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """Truncate text to max length."""
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix


def _mrkdwn(text: str) -> dict[str, str]:
    return {"type": "mrkdwn", "text": text}


# ==================== Slack ====================

def format_opportunity_alert(
    opportunities: list[OpportunityNotice],
    dashboard_url: str,
) -> dict[str, Any]:
    """Summary header, totals, and the top opportunities by impact."""
    total_impact = sum(o.impact for o in opportunities)
    high_priority = [o for o in opportunities if o.impact > HIGH_PRIORITY_IMPACT]

    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"💰 {len(opportunities)} New Opportunities"},
        },
        {
            "type": "section",
            "fields": [
                _mrkdwn(f"*Total Est. Impact:*\n${total_impact:.2f}/mo"),
                _mrkdwn(f"*High Priority:*\n{len(high_priority)} (>${HIGH_PRIORITY_IMPACT:.0f}/mo)"),
            ],
        },
        {"type": "divider"},
    ]

    top = sorted(opportunities, key=lambda o: o.impact, reverse=True)[:MAX_LISTED_OPPORTUNITIES]
    for opp in top:
        blocks.append({
            "type": "section",
            "text": _mrkdwn(
                f"*{escape_mrkdwn(opp.title)}*\n"
                f"{humanize(opp.opportunity_type)} • {round(opp.confidence * 100)}% confidence"
            ),
            "fields": [_mrkdwn(f"*Impact:* +${opp.impact:.2f}/mo")],
        })

    if len(opportunities) > MAX_LISTED_OPPORTUNITIES:
        blocks.append({
            "type": "context",
            "elements": [_mrkdwn(f"+{len(opportunities) - MAX_LISTED_OPPORTUNITIES} more opportunities")],
        })

    blocks.append({
        "type": "section",
        "text": _mrkdwn(f"<{dashboard_url.rstrip('/')}/queue|View Queue →>"),
    })

    return {
        "text": f"{len(opportunities)} new opportunities detected (${total_impact:.2f}/mo est.)",
        "blocks": blocks,
    }


def format_run_result(run: RunNotice) -> dict[str, Any]:
    """Run status, timing and counts."""
    status_emoji = "✅" if run.status == "COMPLETED" else "❌"

    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{status_emoji} Agent Run: {run.run_type}"},
        },
        {
            "type": "section",
            "fields": [
                _mrkdwn(f"*Status:*\n{run.status}"),
                _mrkdwn(f"*Duration:*\n{format_duration(run.duration_ms)}"),
                _mrkdwn(f"*Processed:*\n{run.items_processed} items"),
                _mrkdwn(f"*Found:*\n{run.opportunities_found} opportunities"),
            ],
        },
    ]

    if run.errors_encountered > 0:
        blocks.append({
            "type": "section",
            "text": _mrkdwn(f"⚠️ *Errors:* {run.errors_encountered}"),
        })

    if run.log_summary:
        blocks.append({
            "type": "context",
            "elements": [_mrkdwn(escape_mrkdwn(run.log_summary))],
        })

    return {
        "text": f"Agent {run.run_type} {run.status.lower()} - {run.opportunities_found} opportunities found",
        "blocks": blocks,
    }


def format_critical_error(
    error: str,
    context: str,
    traceback_text: Optional[str] = None,
) -> dict[str, Any]:
    """Critical error with context and a truncated traceback."""
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": "🚨 Critical Error"}},
        {"type": "section", "text": _mrkdwn(f"*Context:* {escape_mrkdwn(context)}")},
        {"type": "section", "text": _mrkdwn(f"*Error:*\n```{escape_mrkdwn(error)}```")},
    ]

    if traceback_text:
        blocks.append({
            "type": "context",
            "elements": [_mrkdwn(f"Traceback: {truncate(traceback_text, TRACEBACK_PREVIEW_CHARS)}")],
        })

    return {
        "text": f"🚨 Critical Error in {context}: {error}",
        "blocks": blocks,
    }


def format_execution_failures(batch: list[tuple[str, str]]) -> str:
    """One failure in full, or a bulleted list of titles."""
    if len(batch) == 1:
        title, body = batch[0]
        return f"{title}\n{body}"
    lines = "\n".join(f"• {title}" for title, _ in batch)
    return f"{len(batch)} execution failures:\n{lines}"


def format_circuit_breaker(opened: bool) -> str:
    if opened:
        return "🚨 Circuit breaker OPENED - Auto-execution paused after repeated failures"
    return "✅ Circuit breaker closed - Auto-execution resumed"


# ==================== Email ====================

_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
</head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f9fafb;">
  <div style="background-color: white; border-radius: 12px; padding: 24px;">
    <h1 style="color: #1f2937; margin: 0 0 8px 0; font-size: 24px;">{title}</h1>
    <p style="color: #6b7280; margin: 0 0 24px 0;">{subtitle}</p>
    {content}
    <div style="margin-top: 24px; padding-top: 24px; border-top: 1px solid #e5e7eb; text-align: center;">
      <a href="{dashboard_url}" style="display: inline-block; background-color: #2563eb; color: white; text-decoration: none; padding: 12px 24px; border-radius: 8px;">View Dashboard</a>
    </div>
  </div>
  <p style="text-align: center; color: #9ca3af; font-size: 12px; margin-top: 16px;">
    Content Action Engine • <a href="{dashboard_url}/settings" style="color: #9ca3af;">Manage notifications</a>
  </p>
</body>
</html>
"""

_CELL = 'style="padding: 8px; border-bottom: 1px solid #e5e7eb; text-align: {align};"'


def _tile(value: str, label: str, color: str) -> str:
    return (
        f'<div style="border-radius: 8px; padding: 16px; display: inline-block; width: 44%; margin: 4px;">'
        f'<div style="font-size: 28px; font-weight: bold; color: {color};">{value}</div>'
        f'<div style="font-size: 14px;">{label}</div></div>'
    )


def _table(title: str, headers: list[tuple[str, str]], rows: list[list[str]]) -> str:
    if not rows:
        return ""
    head = "".join(
        f'<th style="padding: 8px; text-align: {align}; border-bottom: 2px solid #e5e7eb;">{name}</th>'
        for name, align in headers
    )
    body = "".join(
        "<tr>" + "".join(
            f"<td {_CELL.format(align=headers[i][1])}>{cell}</td>" for i, cell in enumerate(row)
        ) + "</tr>"
        for row in rows
    )
    return (
        f'<h2 style="color: #374151; font-size: 18px; margin: 24px 0 16px 0;">{title}</h2>'
        f'<table style="width: 100%; border-collapse: collapse; font-size: 14px;">'
        f"<thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"
    )


def build_daily_digest_html(stats: DailyDigestStats, dashboard_url: str) -> str:
    tiles = "".join([
        _tile(str(stats.new_opportunities), "New Opportunities", "#16a34a"),
        _tile(f"+${stats.total_estimated_impact:.2f}", "Est. Impact/mo", "#059669"),
        _tile(str(stats.approved_opportunities), "Approved", "#2563eb"),
        _tile(str(stats.rejected_opportunities), "Rejected", "#dc2626"),
        _tile(str(stats.implemented_opportunities), "Implemented", "#d97706"),
    ])
    table = _table(
        "Top Opportunities",
        [("Title", "left"), ("Type", "left"), ("Impact", "right")],
        [
            [
                html.escape(o["title"]),
                html.escape(humanize(o["type"])),
                f"+${o['estimated_impact']:.2f}",
            ]
            for o in stats.top_opportunities
        ],
    )
    return _PAGE.format(
        title="Daily Digest",
        subtitle=stats.date.strftime("%A, %B %d, %Y"),
        content=tiles + table,
        dashboard_url=html.escape(dashboard_url.rstrip("/"), quote=True),
    )


def build_weekly_report_html(stats: WeeklyReportStats, dashboard_url: str) -> str:
    accuracy = f"{round(stats.prediction_accuracy * 100)}%" if stats.prediction_accuracy else "N/A"
    tiles = "".join([
        _tile(str(stats.total_opportunities), "Total Opportunities", "#16a34a"),
        _tile(f"+${stats.total_estimated_impact:.2f}", "Est. Impact/mo", "#059669"),
        _tile(str(stats.implemented_count), "Implemented", "#2563eb"),
        _tile(accuracy, "Prediction Accuracy", "#d97706"),
    ])
    days = _table(
        "Daily Breakdown",
        [("Day", "left"), ("Opportunities", "center"), ("Implemented", "center")],
        [
            [d["date"].strftime("%a, %b %d"), str(d["opportunities"]), str(d["implemented"])]
            for d in stats.by_day_breakdown
        ],
    )
    actions = _table(
        "Top Performing Actions",
        [("Action Type", "left"), ("Count", "center"), ("Impact", "right")],
        [
            [html.escape(humanize(a["type"])), str(a["count"]), f"+${a['total_impact']:.2f}"]
            for a in stats.top_performing_actions
        ],
    )
    return _PAGE.format(
        title="Weekly Report",
        subtitle=f"{stats.week_start.isoformat()} - {stats.week_end.isoformat()}",
        content=tiles + days + actions,
        dashboard_url=html.escape(dashboard_url.rstrip("/"), quote=True),
    )
