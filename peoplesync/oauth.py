"""
Upstream OAuth 2.0 client for the connect flow.

SECURITY: This module handles OAuth authentication.
"""
from authlib.integrations.starlette_client import OAuth
from peoplesync.config import settings

# Create OAuth registry
oauth = OAuth()

# Register the upstream OAuth client
oauth.register(
    name='pco',
    client_id=settings.PCO_CLIENT_ID,
    client_secret=settings.PCO_CLIENT_SECRET,
    authorize_url=f'{settings.PCO_API_BASE_URL}/oauth/authorize',
    access_token_url=f'{settings.PCO_API_BASE_URL}/oauth/token',
    api_base_url=settings.PCO_API_BASE_URL,
    client_kwargs={
        'scope': settings.PCO_OAUTH_SCOPE,
        'token_endpoint_auth_method': 'client_secret_post',
    }
)
