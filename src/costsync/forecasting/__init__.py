"""Month-end forecasting and monthly projections."""

from .enhancer import ForecastEnhancer, ForecastResult, MonthlyProjection
