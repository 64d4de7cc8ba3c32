"""Post-hoc quality assurance of the vector index."""

from .validator import QualityAssuranceValidator, QAReport
from .report import QAReportWriter

__all__ = [
    'QualityAssuranceValidator',
    'QAReport',
    'QAReportWriter',
]
