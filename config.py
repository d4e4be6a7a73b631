import logging
import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./library.db")
    db_busy_timeout: float = float(os.getenv("LIBRARY_DB_BUSY_TIMEOUT", "30"))
    db_echo: bool = _env_flag("LIBRARY_DB_ECHO")

    # Loan rules
    # Test mode shrinks the loan period to one minute so overdue handling can be exercised by hand.
    test_mode: bool = _env_flag("LIBRARY_TEST_MODE")
    loan_period_days: int = int(os.getenv("LIBRARY_LOAN_PERIOD_DAYS", "30"))
    fine_per_unit: float = float(os.getenv("LIBRARY_FINE_PER_UNIT", "1.0"))
    release_book_on_fine: bool = _env_flag("LIBRARY_RELEASE_BOOK_ON_FINE")

    # Audit
    audit_sink: str = os.getenv("LIBRARY_AUDIT_SINK", "database")

    # Application
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")

    @property
    def loan_period(self) -> timedelta:
        if self.test_mode:
            return timedelta(minutes=1)
        return timedelta(days=self.loan_period_days)

    @property
    def overdue_unit(self) -> timedelta:
        return timedelta(minutes=1) if self.test_mode else timedelta(days=1)

    @property
    def mode_description(self) -> str:
        mode = "test" if self.test_mode else "production"
        unit = "minute" if self.test_mode else "day"
        return f"{mode} mode, loan period {self.loan_period}, fine {self.fine_per_unit:.2f} per {unit}"


settings = Settings()


def setup_logging(level: str = settings.log_level) -> logging.Logger:
    logger = logging.getLogger("library")
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(handler.get_name() == "library" for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s", datefmt="%H:%M:%S")
        )
        handler.set_name("library")
        root.addHandler(handler)
    return logger
