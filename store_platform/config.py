"""
Configuration module — all settings from env vars with sensible defaults.
Follows 12-factor app methodology.
"""
import os
from dataclasses import dataclass


def _env_bool(key: str, default: str = "false") -> bool:
    return os.environ.get(key, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = _env_bool("IN_CLUSTER")

    # Persistence / events
    DATABASE_URL: str = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./stores.db")
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    REDIS_TIMEOUT: float = float(os.environ.get("REDIS_TIMEOUT", "2"))

    # Addressing
    DOMAIN_SUFFIX: str = os.environ.get("DOMAIN_SUFFIX", "stores.local")
    URL_SCHEME: str = os.environ.get("URL_SCHEME", "https")
    PUBLIC_IP: str = os.environ.get("PUBLIC_IP", "127.0.0.1")

    # Helm charts
    WOOCOMMERCE_CHART_PATH: str = os.environ.get("WOOCOMMERCE_CHART_PATH", "/charts/woocommerce")
    MEDUSA_CHART_PATH: str = os.environ.get("MEDUSA_CHART_PATH", "/charts/medusa")
    INGRESS_CLASS: str = os.environ.get("INGRESS_CLASS", "nginx")
    STORAGE_CLASS: str = os.environ.get("STORAGE_CLASS", "standard")
    HELM_BINARY: str = os.environ.get("HELM_BINARY", "helm")
    HELM_TIMEOUT: int = int(os.environ.get("HELM_TIMEOUT", "300"))

    # Quota
    MAX_STORES_PER_OWNER: int = int(os.environ.get("MAX_STORES_PER_OWNER", "10"))

    # Provisioning loop
    PROVISION_POLL_INTERVAL: float = float(os.environ.get("PROVISION_POLL_INTERVAL", "5"))
    PROVISION_MAX_ATTEMPTS: int = int(os.environ.get("PROVISION_MAX_ATTEMPTS", "60"))
    PROVISION_TIMEOUT: float = float(os.environ.get("PROVISION_TIMEOUT", "300"))
    MAX_PROVISION_DURATION: float = float(os.environ.get("MAX_PROVISION_DURATION", "1200"))
    RESTART_THRESHOLD: int = int(os.environ.get("RESTART_THRESHOLD", "5"))
    MAX_PARALLEL_PROVISIONS: int = int(os.environ.get("MAX_PARALLEL_PROVISIONS", "3"))
    ERROR_MESSAGE_MAX_LENGTH: int = int(os.environ.get("ERROR_MESSAGE_MAX_LENGTH", "500"))

    # Namespace deletion
    NAMESPACE_DELETE_POLL_INTERVAL: float = float(os.environ.get("NAMESPACE_DELETE_POLL_INTERVAL", "2"))
    NAMESPACE_DELETE_MAX_ATTEMPTS: int = int(os.environ.get("NAMESPACE_DELETE_MAX_ATTEMPTS", "30"))
    NAMESPACE_DELETE_TIMEOUT: float = float(os.environ.get("NAMESPACE_DELETE_TIMEOUT", "60"))

    # One-shot jobs (WordPress URL rewrite)
    JOB_POLL_INTERVAL: float = float(os.environ.get("JOB_POLL_INTERVAL", "2"))
    JOB_MAX_ATTEMPTS: int = int(os.environ.get("JOB_MAX_ATTEMPTS", "30"))
    URL_REWRITE_IMAGE: str = os.environ.get("URL_REWRITE_IMAGE", "wordpress:cli")

    # Rate limiting
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "20/minute")
    STRICT_RATE_LIMIT: str = os.environ.get("STRICT_RATE_LIMIT", "5/minute")
    RATE_LIMIT_ENABLED: bool = _env_bool("RATE_LIMIT_ENABLED", "true")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()
