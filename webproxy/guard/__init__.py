from .access_guard import AccessDecision, check, check_host, ensure_allowed

__all__ = ["AccessDecision", "check", "check_host", "ensure_allowed"]
