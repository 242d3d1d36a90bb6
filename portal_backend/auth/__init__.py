from .auth_utils import create_access_token, current_account, decode_token

__all__ = ["create_access_token", "current_account", "decode_token"]
