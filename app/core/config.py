from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# It's better to load the .env file from the root of the project
# Assuming the script is run from the project root
load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True)

    ENVIRONMENT: str = "development"
    APP_NAME: str = "Educate Marketplace"
    FRONTEND_URL: str = "http://localhost:5173"
    CORS_ORIGINS: List[str] = ["*"]

    # JWT
    JWT_SECRET: str = "your-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # MongoDB
    MONGO_URL: str
    DB_NAME: str
    # Multi-document transactions need a replica set
    MONGO_TRANSACTIONS: bool = True

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # SMTP
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASS: str = ""
    MAIL_FROM: str = ""

    # Invoices
    INVOICE_AUTO_GENERATE: bool = True
    INVOICE_SEND_EMAIL: bool = True
    INVOICE_PREFIX: str = "INV"
    INVOICE_START_NUMBER: int = 1001
    INVOICE_COMPANY_NAME: str = "Educate Link Ltd"
    INVOICE_COMPANY_ADDRESS: str = ""
    INVOICE_VAT_NUMBER: str = ""

    HEALTH_CHECK_TIMEOUT_SECONDS: float = 5.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

settings = Settings()
