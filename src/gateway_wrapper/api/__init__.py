from gateway_wrapper.api.routes import register_wrapper_routes

__all__ = ["register_wrapper_routes"]
