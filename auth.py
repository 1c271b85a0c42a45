"""
Identity verification against Firebase Authentication.

ID tokens are RS256 JWTs signed with Google's rotating keys; they are checked
with PyJWT against the published JWKS. Profile changes are pushed back to the
provider through the Identity Toolkit REST API using service-account
credentials.
"""
import logging
from typing import Any, Dict, Optional

import jwt  # PyJWT
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account
from pydantic import BaseModel
from requests import RequestException

import config
from errors import Internal, Unauthorized

logger = logging.getLogger(__name__)

JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
ISSUER_PREFIX = "https://securetoken.google.com/"
TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1/projects/{project}/accounts:update"
TOKEN_URI = "https://oauth2.googleapis.com/token"
SCOPES = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/identitytoolkit",
]


class Identity(BaseModel):
    uid: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


class IdentityProvider:
    def __init__(
        self,
        project_id: str,
        client_email: str = "",
        private_key: str = "",
        jwk_client: Optional[Any] = None,
    ):
        self.project_id = project_id
        self.issuer = ISSUER_PREFIX + project_id
        self._client_email = client_email
        self._private_key = private_key
        self._jwk_client = jwk_client or jwt.PyJWKClient(JWKS_URL)
        self._session: Optional[AuthorizedSession] = None

    def verify_token(self, token: str) -> Identity:
        try:
            signing_key = self._jwk_client.get_signing_key_from_jwt(token)
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=self.issuer,
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token expired")
        except jwt.PyJWTError as exc:
            logger.warning("token verification failed: %s", exc)
            raise Unauthorized("Invalid token")

        uid = claims.get("user_id") or claims.get("sub")
        email = claims.get("email")
        if not uid or not email:
            raise Unauthorized("Invalid token")
        return Identity(uid=uid, email=email, name=claims.get("name"), picture=claims.get("picture"))

    def update_user(self, uid: str, display_name: Optional[str] = None,
                    photo_url: Optional[str] = None) -> None:
        body: Dict[str, Any] = {"localId": uid}
        if display_name is not None:
            body["displayName"] = display_name
        if photo_url is not None:
            body["photoUrl"] = photo_url
        try:
            resp = self._authorized_session().post(
                TOOLKIT_URL.format(project=self.project_id), json=body, timeout=15
            )
        except RequestException as exc:
            logger.error("identity profile sync failed uid=%s: %s", uid, exc)
            raise Internal("Failed to update identity profile")
        if resp.status_code >= 400:
            logger.error("identity profile sync rejected uid=%s status=%s body=%s",
                         uid, resp.status_code, resp.text[:200])
            raise Internal("Failed to update identity profile")

    def _authorized_session(self) -> AuthorizedSession:
        if self._session is None:
            if not (self._client_email and self._private_key):
                raise Internal("Identity provider credentials not configured")
            credentials = service_account.Credentials.from_service_account_info(
                {
                    "type": "service_account",
                    "project_id": self.project_id,
                    "client_email": self._client_email,
                    "private_key": self._private_key,
                    "token_uri": TOKEN_URI,
                },
                scopes=SCOPES,
            )
            self._session = AuthorizedSession(credentials)
        return self._session


_provider: Optional[IdentityProvider] = None


def get_identity_provider() -> IdentityProvider:
    global _provider
    if _provider is None:
        _provider = IdentityProvider(
            config.FIREBASE_PROJECT_ID,
            config.FIREBASE_CLIENT_EMAIL,
            config.FIREBASE_PRIVATE_KEY,
        )
    return _provider
