from .usage_daily import UsageDaily
from .analyses import AnalysisRecord

__all__ = ['UsageDaily', 'AnalysisRecord']
