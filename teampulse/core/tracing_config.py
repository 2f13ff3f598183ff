import os
import logging
from dotenv import load_dotenv


load_dotenv()
logger = logging.getLogger("langsmith_tracing")
IS_TRACING_ENABLED = os.getenv("LANGSMITH_TRACING_V2", "").lower() in ("true", "1", "yes")
PROJECT_NAME = "teampulse-negotiation-analysis"


def get_metadata(component: str, **kwargs) -> dict:
    """Standardized metadata for any @traceable function."""
    return {"component": component, "project": PROJECT_NAME, **kwargs}


def init_tracing() -> bool:
    status = "enabled" if IS_TRACING_ENABLED else "disabled"
    logger.info(f"LangSmith tracing is {status} for project: {PROJECT_NAME}")
    return IS_TRACING_ENABLED
