from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MilestoneReward(BaseModel):
    name: str
    item_ref: str


def _default_milestones() -> dict[int, MilestoneReward]:
    return {
        5: MilestoneReward(name="Free Sample Pack", item_ref="gid://shopify/Product/1001"),
        10: MilestoneReward(name="Free Candle", item_ref="gid://shopify/Product/1002"),
        25: MilestoneReward(name="Free Gift Box", item_ref="gid://shopify/Product/1003"),
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # Commerce platform
    shop_domain: str = "hemlock-oak.myshopify.com"
    shopify_admin_token: str = ""
    shopify_api_version: str = "2024-10"
    shopify_store_url: str = "https://hemlock-oak.myshopify.com"
    provider_timeout_seconds: float = 10.0
    deactivation_grace_seconds: int = 60
    code_suffix_length: int = 5

    # Ledger store; empty uses the in-memory store
    database_url: Optional[str] = None
    auto_create_schema: bool = False
    seed_demo_data: bool = False

    # Referral milestones, threshold -> free item
    milestones: dict[int, MilestoneReward] = Field(default_factory=_default_milestones)

    @field_validator("database_url", mode="before")
    @classmethod
    def _blank_database_url(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("milestones")
    @classmethod
    def _positive_thresholds(cls, value: dict[int, MilestoneReward]) -> dict[int, MilestoneReward]:
        if any(threshold <= 0 for threshold in value):
            raise ValueError("Milestone thresholds must be positive")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
