from .base import Base, UTCDateTime
from .user import User
from .oauth_models import OAuthClient
from .token_models import OAuthToken
from .auth_code_models import OAuthAuthCode
from .rate_limit_models import OAuthRateLimit
from .consent_models import OAuthConsent
