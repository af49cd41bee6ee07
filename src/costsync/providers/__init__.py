"""Billing adapters for AWS, Azure, GCP, DigitalOcean, Linode, Vultr, IBM Cloud and MongoDB Atlas."""

# Import adapter implementations to register them with ProviderFactory
from . import aws
from . import azure
from . import digitalocean
from . import gcp
from . import ibm
from . import linode
from . import mongodb
from . import vultr

# Make key classes available at package level
from .base import (
    Credentials,
    ProviderAdapter,
    ProviderFactory,
    ProviderId,
)
