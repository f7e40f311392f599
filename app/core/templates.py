"""Metricpipe — Metric Template Registry.

A template tells the ingestion engine which connector endpoint to call
for a metric and gives generators a hint about where the value lives.
Register new integration metrics here.
"""

from typing import Any, Dict, List, Optional


class MetricTemplate:
    """Describes how to fetch one kind of integration metric."""

    def __init__(
        self,
        template_id: str,
        integration_id: str,
        label: str,
        description: str,
        metric_endpoint: str,
        method: str = "GET",
        request_body: Any = None,
        required_params: Optional[List[str]] = None,
        data_path: Optional[str] = None,
        is_time_series: bool = True,
        extraction_prompt: Optional[str] = None,
    ):
        self.template_id = template_id
        self.integration_id = integration_id
        self.label = label
        self.description = description
        self.metric_endpoint = metric_endpoint
        self.method = method
        self.request_body = request_body
        self.required_params = required_params or []
        self.data_path = data_path
        self.is_time_series = is_time_series
        self.extraction_prompt = extraction_prompt

    def __repr__(self) -> str:
        return f"<Template {self.template_id} ({self.integration_id})>"


_TEMPLATES: List[MetricTemplate] = [
    # ── GitHub ──
    MetricTemplate(
        "github-followers-count",
        "github",
        "Followers",
        "Total number of GitHub followers",
        "/user",
        data_path="followers",
    ),
    MetricTemplate(
        "github-repo-stars",
        "github",
        "Repository Stars",
        "Star count for a specific repository",
        "/repos/{OWNER}/{REPO}",
        required_params=["OWNER", "REPO"],
        data_path="stargazers_count",
    ),
    MetricTemplate(
        "github-commit-activity",
        "github",
        "Weekly Commits",
        "Commits per week over the last year",
        "/repos/{OWNER}/{REPO}/stats/commit_activity",
        required_params=["OWNER", "REPO"],
        extraction_prompt="Each item has a unix 'week' timestamp and a 'total' commit count.",
    ),
    MetricTemplate(
        "github-repo-stars-by-repo",
        "github",
        "Stars by Repository",
        "Current star count for each of your repositories",
        "/user/repos?sort=updated&per_page=20",
        is_time_series=False,
        extraction_prompt="Each item is a repository with a 'name' and a 'stargazers_count'.",
    ),
    # ── PostHog ──
    MetricTemplate(
        "posthog-event-count",
        "posthog",
        "Daily Event Count",
        "Occurrences of a PostHog event per day",
        "/api/projects/{PROJECT_ID}/query/",
        method="POST",
        request_body=(
            '{"query": {"kind": "HogQLQuery", "query": '
            '"SELECT toDate(timestamp) AS day, count() AS total FROM events '
            "WHERE event = '{EVENT}' AND timestamp > now() - INTERVAL 30 DAY "
            'GROUP BY day ORDER BY day"}}'
        ),
        required_params=["PROJECT_ID", "EVENT"],
        extraction_prompt="'results' is a list of [day, total] rows.",
    ),
    # ── YouTube ──
    MetricTemplate(
        "youtube-channel-views",
        "youtube",
        "Channel Views",
        "Daily views across the channel for the last 28 days",
        (
            "https://youtubeanalytics.googleapis.com/v2/reports"
            "?ids=channel==MINE&startDate=28daysAgo&endDate=today"
            "&metrics=views&dimensions=day"
        ),
        extraction_prompt="'rows' is a list of [day, views] rows.",
    ),
    # ── Google Sheets ──
    MetricTemplate(
        "google-sheets-column",
        "google-sheets",
        "Sheet Column",
        "Numeric column from a spreadsheet range, first column is the date",
        "/v4/spreadsheets/{SPREADSHEET_ID}/values/{RANGE}",
        required_params=["SPREADSHEET_ID", "RANGE"],
        extraction_prompt="'values' is a list of rows; the first row is a header.",
    ),
    # ── Linear ──
    MetricTemplate(
        "linear-completed-issues",
        "linear",
        "Completed Issues",
        "Issues completed per day",
        "/graphql",
        method="POST",
        request_body={
            "query": (
                "query { issues(first: 250, filter: { completedAt: { gt: \"-P30D\" } }) "
                "{ nodes { id completedAt priority } } }"
            )
        },
        extraction_prompt="Count issues in data.issues.nodes grouped by completedAt day.",
    ),
]

TEMPLATES: Dict[str, MetricTemplate] = {t.template_id: t for t in _TEMPLATES}


def get_template(template_id: Optional[str]) -> Optional[MetricTemplate]:
    """Return the registered template, or None for unknown/manual metrics."""
    if not template_id:
        return None
    return TEMPLATES.get(template_id)
