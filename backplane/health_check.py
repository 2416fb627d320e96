"""
Health check script for container health monitoring.

Used by Docker HEALTHCHECK to verify the backplane is reachable and, when
an agent id is known, that the agent is still registered.

    python -m backplane.health_check
"""

import asyncio
import logging
import os
import sys
from typing import Optional

from .backplane import Backplane
from .config import BackplaneConfig
from .errors import BackplaneError


async def check_health(
    config: Optional[BackplaneConfig] = None,
    agent_id: Optional[str] = None,
    backplane: Optional[Backplane] = None,
) -> bool:
    """
    Perform health checks.

    Checks:
    1. Redis connectivity
    2. Agent registration (if an agent id is given or set in AGENT_ID/HOSTNAME)

    Returns:
        True if healthy, False otherwise
    """
    agent_id = agent_id or os.environ.get("AGENT_ID", os.environ.get("HOSTNAME"))
    owned = backplane is None
    if owned:
        backplane = Backplane(config or BackplaneConfig.from_env())

    try:
        if not await backplane.ping():
            print("UNHEALTHY: Redis connection failed")
            return False

        if agent_id:
            agent = await backplane.discovery.get_agent(agent_id)

            if agent is None:
                print(f"UNHEALTHY: Agent {agent_id} not registered")
                return False

            if agent.status == "offline":
                print(f"UNHEALTHY: Agent {agent_id} is offline")
                return False

        print("HEALTHY")
        return True

    except BackplaneError as e:
        print(f"UNHEALTHY: {e}")
        return False

    finally:
        if owned:
            await backplane.cleanup()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    healthy = asyncio.run(check_health())
    sys.exit(0 if healthy else 1)
