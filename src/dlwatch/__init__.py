"""Download-service account poller and rule automation worker."""
