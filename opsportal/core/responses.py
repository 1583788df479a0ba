"""
Success envelope shared by the JSON endpoints
"""
from datetime import datetime, timezone
from typing import Any, Dict


def success_response(message: str, data: Any = None) -> Dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
