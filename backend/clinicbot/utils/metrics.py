# /clinicbot/utils/metrics.py

from prometheus_client import Counter, Histogram

# This file defines all Prometheus metrics used for dialogue engine monitoring.
# Centralizing them here makes them easy to find and manage.

# Dialogue Metrics
turn_counter = Counter('dialogue_turns_total', 'Turns handled by the orchestrator', ['channel', 'outcome'])
intent_counter = Counter('dialogue_intents_total', 'Classified intents', ['intent', 'source'])
flow_events_counter = Counter('dialogue_flow_events_total', 'Flow lifecycle events', ['flow', 'event'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])

# Dependency Metrics
ai_requests_counter = Counter('ai_requests_total', 'Total AI classifier requests', ['model', 'status'])
session_store_operations = Counter('session_store_operations_total', 'Session store operations', ['operation', 'status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])

# Protection Metrics
rate_limited_counter = Counter('rate_limited_turns_total', 'Turns rejected by the per-identity rate limit')
duplicate_deliveries_counter = Counter('duplicate_deliveries_total', 'Inbound messages suppressed as duplicates', ['channel'])
