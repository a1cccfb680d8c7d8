"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Database configuration
    use_sqlite: bool = True
    database_path: str = "loan_servicing.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    max_annual_rate: str = "33.5"  # Legal ceiling; headroom above the contract rate accrues as moratory
    payoff_penalty_threshold: int = 12
    penalty_installments: int = 3
    extraordinary_penalty_enabled: bool = True
    batch_match_tolerance: str = "1.00"
    batch_preview_ttl_minutes: int = 10
    privileged_roles: str = "admin"  # Comma separated

    # External ledger (ERP) configuration
    erp_url: str = ""  # Empty = not configured, dispatches are skipped
    erp_email: str = ""
    erp_password: str = ""
    erp_timeout: float = 30.0
    dispatch_inline: bool = True
    dispatch_max_retries: int = 3
    retry_base_delay_minutes: int = 5
    retry_backoff_factor: int = 3
    stale_pending_minutes: int = 10

    # Chart of accounts mapping
    account_bank: str = ""
    account_receivable: str = ""
    account_interest_income: str = ""
    account_moratory_income: str = ""
    account_policy_payable: str = ""
    account_penalty_income: str = ""
    account_pending_balances: str = ""

    # Background sweeps
    sweeps_enabled: bool = False
    sweep_interval_seconds: int = 3600
    retry_batch_limit: int = 10

    log_file: Optional[str] = None

    class Config:
        env_prefix = "LOANSVC_"
        env_file = ".env"
        case_sensitive = False

    def account_codes(self) -> dict:
        """Chart-of-accounts mapping keyed by ledger role"""
        return {
            "bank": self.account_bank,
            "receivable": self.account_receivable,
            "interest_income": self.account_interest_income,
            "moratory_income": self.account_moratory_income,
            "policy_payable": self.account_policy_payable,
            "penalty_income": self.account_penalty_income,
            "pending_balances": self.account_pending_balances,
        }

    def privileged_role_set(self) -> set:
        return {role.strip() for role in self.privileged_roles.split(",") if role.strip()}


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config
