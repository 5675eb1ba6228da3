"""
Health check for production monitoring
"""
import logging
from typing import Any, Dict, Optional

from database import test_connection
from services.chain_node_client import ChainNodeClient
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


async def check_health(node: Optional[ChainNodeClient] = None, bind=None) -> Dict[str, Any]:
    """Database ping plus node block height"""
    report: Dict[str, Any] = {"timestamp": get_naive_utc_now().isoformat()}

    database_ok = test_connection(bind) if bind is not None else test_connection()
    report["database"] = {"status": "healthy" if database_ok else "unhealthy"}

    if node is not None:
        result = await node.get_block_count()
        if result.ok:
            report["node"] = {"status": "healthy", "block_height": result.value}
        else:
            logger.warning(f"Node health check failed: {result.error}")
            report["node"] = {
                "status": "busy" if result.error.retryable else "unhealthy",
                "error": str(result.error),
            }

    statuses = [section["status"] for key, section in report.items() if isinstance(section, dict)]
    report["status"] = "healthy" if all(status == "healthy" for status in statuses) else "unhealthy"
    return report
