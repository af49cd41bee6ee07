"""Tenant sync orchestration and host collaborator interfaces."""
