"""n8n REST client used by the Deployment Agent."""

from n8n_automation_agent.client.config import N8nSettings
from n8n_automation_agent.client.n8n_client import N8nClient

__all__ = ["N8nClient", "N8nSettings"]
