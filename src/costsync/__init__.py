"""
costsync

Cost ingestion and forecasting pipeline for AWS, Azure, GCP, DigitalOcean,
Linode, Vultr, IBM Cloud and MongoDB Atlas billing data.
"""

__version__ = "1.0.0"
__author__ = "Cost Monitor Team"
