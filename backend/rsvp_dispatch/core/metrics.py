"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, Histogram

# Delivery metrics
deliveries_counter = Counter(
    'rsvp_dispatch_deliveries_total',
    'Delivery attempts recorded in the delivery log',
    ['channel', 'status']
)

provider_errors_counter = Counter(
    'rsvp_dispatch_provider_errors_total',
    'Failed sends grouped by error kind',
    ['channel', 'error_kind']
)

send_latency_histogram = Histogram(
    'rsvp_dispatch_send_seconds',
    'Time spent in a single provider send call',
    ['channel']
)

# Job metrics
jobs_created_counter = Counter(
    'rsvp_dispatch_jobs_created_total',
    'Bulk message jobs created',
    ['channel', 'source']
)

jobs_finished_counter = Counter(
    'rsvp_dispatch_jobs_finished_total',
    'Bulk message jobs that reached a terminal status',
    ['status']
)

chunks_processed_counter = Counter(
    'rsvp_dispatch_chunks_processed_total',
    'Dispatcher invocations that processed a chunk'
)

quota_exhausted_counter = Counter(
    'rsvp_dispatch_quota_exhausted_total',
    'Jobs that stopped sending because the account quota ran out',
    ['channel']
)

pending_jobs_gauge = Gauge(
    'rsvp_dispatch_pending_jobs',
    'Jobs waiting for the next dispatch tick'
)

# Automation metrics
automation_runs_counter = Counter(
    'rsvp_dispatch_automation_runs_total',
    'Automation evaluation runs',
    ['status']
)

automation_guests_matched_counter = Counter(
    'rsvp_dispatch_automation_guests_matched_total',
    'Guests selected by an automation flow',
    ['trigger']
)
