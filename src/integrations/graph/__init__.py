"""Meta Graph API transport and token lifecycle helpers."""
