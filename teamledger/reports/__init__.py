"""Reports package."""

from teamledger.reports.summary import ReportService, build_team_summary, total_expense

__all__ = ["ReportService", "build_team_summary", "total_expense"]
