"""
Prometheus metrics
"""

from prometheus_client import Counter, Histogram

request_count = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
request_duration = Histogram('http_request_duration_seconds', 'HTTP request duration')

dictations_ingested = Counter('dictations_ingested_total', 'Dictations accepted for transcription', ['vendor'])
transcription_duration = Histogram('transcription_duration_seconds', 'Background transcription duration')
dictation_outcomes = Counter(
    'dictation_outcomes_total', 'Terminal dictation states reached', ['status', 'reason']
)
extraction_outcomes = Counter('note_extractions_total', 'Structured note extraction attempts', ['outcome'])
