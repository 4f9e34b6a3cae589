from gateway_wrapper.store.token_store import GatewayTokenStore, InvalidTokenFileError, is_valid_gateway_token

__all__ = ["GatewayTokenStore", "InvalidTokenFileError", "is_valid_gateway_token"]
