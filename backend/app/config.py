import os
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/pos')
        # Comma-separated list of allowed CORS origins for the POS/admin front ends.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Process-wide pricing defaults; companies override via company_settings key='pricing'.
        self.pricing_rounding_mode = os.getenv("PRICING_ROUNDING_MODE", "NEAREST_1").strip()
        self.pricing_max_discount_percent = os.getenv("PRICING_MAX_DISCOUNT_PERCENT", "100").strip()
        self.pricing_allow_negative_totals = os.getenv("PRICING_ALLOW_NEGATIVE_TOTALS", "false").strip()

settings = Settings()
