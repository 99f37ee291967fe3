"""API router exports."""
from funnelwatch.api.alerts import router as alerts
from funnelwatch.api.cron import router as cron
from funnelwatch.api.funnels import router as funnels
from funnelwatch.api.webhooks import router as webhooks
