from .policies import RetryPolicy, create_provider_policy

__all__ = ["RetryPolicy", "create_provider_policy"]
