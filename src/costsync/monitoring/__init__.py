"""Rolling cost baselines and anomaly flagging."""

from .baselines import AnomalyBaselineEngine, flag_anomalies, severity_for, variance_percent
