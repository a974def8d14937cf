from typing import Optional

from fastapi import Header, HTTPException

from homeio_agent import settings


def require_agent_token(x_agent_token: Optional[str] = Header(default=None, alias="X-Agent-Token")) -> None:
    expected = settings.HOMEIO_AGENT_TOKEN
    if not expected or expected == "CHANGE_ME":
        raise HTTPException(status_code=500, detail="agent token not configured")
    if x_agent_token != expected:
        raise HTTPException(status_code=401, detail="unauthorized")
