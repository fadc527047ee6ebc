"""Application metrics using the Prometheus client library.

This module defines all metrics in one place: a single inventory of
everything the service measures.  Other modules import specific metrics
and increment them at the point of action.

Everything here is a COUNTER except the queue depth GAUGE.  The
interesting signals for this service are rates:

  rate(consistency_fixes_total[1h])
    → how often the sweep finds drifted progress.  A sudden rise
      usually means a course was restructured under active learners.

  rate(stale_write_retries_total[5m])
    → contention on single documents.  Sustained retries on one
      document type point at a hot writer (e.g. video telemetry pings).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

COURSE_TRANSITIONS = Counter(
    "course_transitions_total",
    "Course lifecycle actions applied, by workflow action",
    ["action"],  # create|submit|review|approve|publish|reject|archive|...
)

PROGRESS_WRITES = Counter(
    "progress_writes_total",
    "Progress document writes, by operation",
    ["operation"],  # complete_lesson|quiz_attempt|video|section|merge|...
)

PROGRESS_PRESERVED = Counter(
    "progress_regressions_preserved_total",
    "Completion downgrades rejected by the monotonic ratchet",
)

CONSISTENCY_FIXES = Counter(
    "consistency_fixes_total",
    "Corrections applied by the consistency sweep",
    ["kind"],  # percentage|orphan_lessons|orphan_sections
)

STALE_WRITE_RETRIES = Counter(
    "stale_write_retries_total",
    "Read-modify-write attempts retried after an optimistic-concurrency miss",
    ["document"],  # course|progress|enrollment
)

ENROLLMENT_SYNCS = Counter(
    "enrollment_syncs_total",
    "Enrollment progress overwritten from the progress document",
)

CERTIFICATES_ISSUED = Counter(
    "certificates_issued_total",
    "Certificates created (idempotent re-issues are not counted)",
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],
)
