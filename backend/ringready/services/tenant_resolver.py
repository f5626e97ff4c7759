from typing import Mapping, Optional


class AgentTenantResolver:
    """Look up which tenant owns a voice agent. Unmapped agents fall back to the default tenant."""

    def __init__(self, mapping: Mapping[str, int], default_tenant_id: int) -> None:
        self._mapping = {str(k): int(v) for k, v in (mapping or {}).items()}
        self.default_tenant_id = default_tenant_id

    def resolve(self, agent_id: Optional[str]) -> int:
        if not agent_id:
            return self.default_tenant_id
        return self._mapping.get(str(agent_id), self.default_tenant_id)

    @classmethod
    def from_settings(cls, settings) -> "AgentTenantResolver":
        return cls(settings.agent_tenant_map, settings.default_tenant_id)
