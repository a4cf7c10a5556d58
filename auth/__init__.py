"""
auth — caller identity for the social API.

Account registration and login live in the host application.  This package
only verifies the HMAC-signed bearer tokens it issues and exposes the
``get_current_user_id`` FastAPI dependency.
"""
