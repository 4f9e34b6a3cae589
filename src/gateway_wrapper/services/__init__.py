"""Gateway wrapper service modules."""

__all__ = [
    "auth_service",
    "config_probe",
    "export_service",
    "gateway_supervisor",
    "onboarding_service",
    "proxy_service",
    "token_service",
]
