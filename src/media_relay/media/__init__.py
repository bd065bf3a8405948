"""Media upload payloads, download webhooks and upload notifications."""
