from .config import ServiceConfig
from .report_source import ReportSource, ConfigfsTsmReportSource
from .service import AttestationService

__all__ = ["AttestationService", "ServiceConfig", "ReportSource", "ConfigfsTsmReportSource"]
