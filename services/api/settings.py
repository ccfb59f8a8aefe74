# services/api/settings.py
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field
import base64
from typing import List, Optional
from pathlib import Path

class Settings(BaseSettings):
    # Public base for guest viewing links
    base_url: str = "http://localhost:3000"
    guest_view_path: str = "/guest-view"

    # Guest session policy
    guest_session_ttl_days: int = 7
    guest_session_max_access: int = 10

    # ===== Firebase (persistence) =====
    # Either a service-account file / base64 blob, or the three discrete fields.
    # If none are set we fall back to the in-memory store (local development).
    firebase_project_id: str = ""
    firebase_client_email: str = ""
    firebase_private_key: str = ""
    firebase_service_account_json: str = ""
    firebase_service_account_base64: str = ""

    # CORS settings
    allowed_origins: str = "http://localhost:3000,http://localhost:3002,http://localhost:5173"

    # Email settings
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_secure: bool = False  # true = implicit TLS (465), false = STARTTLS
    smtp_user: str = ""
    smtp_pass: str = ""
    # Serverless platforms kill requests at 30s, keep the mail round trip below that
    smtp_timeout: float = Field(default=25.0, gt=0, lt=30)
    email_from: Optional[str] = Field(
        default=None,
        description='Sender header, e.g. "Therapy Tools" <no-reply@example.com>',
    )
    email_attach_page_images: bool = False

    # PDF fetching / viewing
    fetch_timeout: float = 30.0
    # Sent only on the first direct attempt; leave empty to skip that attempt
    fetch_auth_header: str = ""
    fetch_cookie: str = ""
    # e.g. https://api.example.com/proxy-pdf?url=  (our own /proxy-pdf endpoint)
    self_hosted_proxy_url: str = ""
    viewer_ttl_seconds: int = 1800
    viewer_max_sessions: int = 64

    # Rate limits (requests per minute, per client IP and route)
    rate_limit_read_per_minute: int = 120
    rate_limit_write_per_minute: int = 20

    model_config = ConfigDict(
        # Always load .env from the same folder as this settings.py
        env_file=str(Path(__file__).resolve().parent / ".env"),
        extra="ignore",
    )

    def resolved_firebase_credentials_path(self) -> str:
        """
        Return the path to the Firebase service account JSON.
        If FIREBASE_SERVICE_ACCOUNT_BASE64 is set, decode it to a temp file.
        Otherwise return FIREBASE_SERVICE_ACCOUNT_JSON (may be empty).
        """
        if self.firebase_service_account_base64:
            import tempfile

            decoded = base64.b64decode(self.firebase_service_account_base64)
            temp_file = tempfile.NamedTemporaryFile(mode='w', delete=False, suffix='.json')
            temp_file.write(decoded.decode('utf-8'))
            temp_file.close()
            return temp_file.name

        return self.firebase_service_account_json

    def firebase_service_account_info(self) -> Optional[dict]:
        """Service-account dict built from the discrete FIREBASE_* variables."""
        if not (self.firebase_project_id and self.firebase_client_email and self.firebase_private_key):
            return None
        return {
            "type": "service_account",
            "project_id": self.firebase_project_id,
            "client_email": self.firebase_client_email,
            # .env files usually carry the PEM with literal \n sequences
            "private_key": self.firebase_private_key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }

    def firebase_configured(self) -> bool:
        return bool(
            self.firebase_service_account_base64
            or self.firebase_service_account_json
            or self.firebase_service_account_info()
        )

    def fetch_credentials(self) -> dict:
        """Authorization / Cookie headers for the credentialed direct fetch."""
        credentials = {}
        if self.fetch_auth_header:
            credentials["Authorization"] = self.fetch_auth_header
        if self.fetch_cookie:
            credentials["Cookie"] = self.fetch_cookie
        return credentials

    def sender_address(self) -> str:
        if self.email_from:
            return self.email_from
        return f'"Therapy Tools" <{self.smtp_user}>'

    def guest_viewing_url(self, session_id: str) -> str:
        base = self.base_url.rstrip("/")
        path = "/" + self.guest_view_path.strip("/")
        return f"{base}{path}/{session_id}"

    def get_origins_list(self) -> List[str]:
        """Parse comma-separated origins into a list."""
        if not self.allowed_origins:
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


_settings_instance = None

def get_settings() -> Settings:
    """Singleton pattern for settings."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
