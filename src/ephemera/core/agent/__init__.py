from .service import DEFAULT_SYSTEM_PROMPT, AgentCore, QueryFailedError, QueryResult

__all__ = ["AgentCore", "DEFAULT_SYSTEM_PROMPT", "QueryFailedError", "QueryResult"]
