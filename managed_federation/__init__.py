"""Managed Identity Federation Broker.

Issues app tokens in any tenant using a managed identity token as the
federated client credential, with no client secrets to manage.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
