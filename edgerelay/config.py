from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import socket


class Settings(BaseSettings):
    ENV: str = "dev"
    DEVICE_NAME: str = Field(default_factory=socket.gethostname)
    # Outbound transports; leaving an address unset disables that transport
    GATEWAY_URL: str | None = None
    API_KEY: str = Field(default="", validation_alias=AliasChoices("API_KEY", "AWS_API_KEY"))
    GATEWAY_SUCCESS_STATUS: int = 202
    MQTT_BROKER: str | None = None
    MQTT_QOS: int = 1
    # Queue storage
    MESSAGE_DIRECTORY: str = "/var/iot_relay"
    # Inbound listeners
    HTTP_HOST: str = "0.0.0.0"
    HTTP_PORT: int = 3553
    UDP_HOST: str = "0.0.0.0"
    UDP_PORT: int = 54545  # 0 disables the UDP listener
    # Pipeline timing
    SWEEP_INTERVAL: float = 60.0
    POLL_INTERVAL: float = 30.0
    SEND_TIMEOUT: float = 2.0
    MAX_CONCURRENT_DELIVERIES: int = 4
    MAX_EVENT_SIZE: int = 65536
    LOG_JSON: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
