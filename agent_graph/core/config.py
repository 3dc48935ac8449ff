from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    # Base configuration
    PROJECT_NAME: str = "Agent Graph"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Model defaults
    DEFAULT_PROVIDER: str = "openai"
    DEFAULT_MODEL: str = "gpt-4o-mini"

    # OpenAI / Azure OpenAI
    OPENAI_API_KEY: Optional[str] = None
    AZURE_OPENAI_API_KEY: Optional[str] = None
    AZURE_OPENAI_ENDPOINT: Optional[str] = None
    AZURE_OPENAI_API_VERSION: str = "2024-12-01-preview"

    # Graph execution
    RECURSION_LIMIT: int = 50
    HANDLE_TOOL_ERRORS: bool = True
    STREAM_BUFFER_MS: Optional[int] = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
