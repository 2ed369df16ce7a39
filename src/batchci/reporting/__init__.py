from .api_client import ReportClient, ReportClientError
from .serialize import report_to_dict

__all__ = ["ReportClient", "ReportClientError", "report_to_dict"]
