from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    STATE_PATH: str = "deploy/state.json"
    LOG_FILE: str = "deploy/deploy.log"
    LOG_LEVEL: str = "INFO"
    METRICS_TEXTFILE: str = ""

    CADDY_ADMIN_URL: str = "http://localhost:2019"
    ADMIN_TIMEOUT: float = 10.0
    UPSTREAM_HOST: str = "localhost"

    HEALTH_HOST: str = "localhost"
    HEALTH_PATH: str = "/health"
    HEALTH_TIMEOUT: float = 60.0
    ROLLBACK_HEALTH_TIMEOUT: float = 30.0
    HEALTH_INTERVAL: float = 2.0
    HEALTH_REQUEST_TIMEOUT: float = 5.0

    SLOT_A_PORT: int = 3402
    SLOT_B_PORT: int = 3403
    UNIT_PREFIX: str = "x402-gateway"
    CONTAINER_PORT: int = 3402
    BIND_HOST: str = "127.0.0.1"
    RUN_ENV_FILE: str = ""
    RUN_VOLUMES: list[str] = []
    RESTART_POLICY: str = "unless-stopped"
    STOP_GRACE_SECONDS: int = 10
    LOG_TAIL_LINES: int = 50

    REPO_DIR: str = "."
    IMAGE_PREFIX: str = "gateway"
    GIT_PULL: bool = True
    PRUNE_IMAGES: bool = True
    COMMAND_TIMEOUT: int = 60
    BUILD_TIMEOUT: int = 900

    class Config:
        env_prefix = "DEPLOY_"
        env_file = ".env"
        extra = "ignore"


settings = Settings()
