"""DojoFlow credit metering and automation engine."""
