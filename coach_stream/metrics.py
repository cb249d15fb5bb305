from prometheus_client import Counter, Histogram

# Turn outcomes
TURNS_TOTAL = Counter(
    "coachstream_turns_total",
    "Chat turns by final outcome",
    ["outcome"],
)
TURN_SECONDS = Histogram(
    "coachstream_turn_seconds",
    "Total duration of completed chat turns in seconds",
)
TTFT_SECONDS = Histogram(
    "coachstream_ttft_seconds",
    "Time to first token for chat turns in seconds",
)

# Failure handling
PHASE_TIMEOUTS_TOTAL = Counter(
    "coachstream_phase_timeouts_total",
    "Phase budget timeouts",
    ["phase"],
)
ERRORS_TOTAL = Counter(
    "coachstream_errors_total",
    "Terminal turn errors by category",
    ["category"],
)
AUTO_RETRIES_TOTAL = Counter(
    "coachstream_auto_retries_total",
    "Transparent resubmissions after abort-class failures",
)
RECOVERY_RETRIES_TOTAL = Counter(
    "coachstream_recovery_retries_total",
    "Connection-level recovery retries",
    ["strategy"],
)
MALFORMED_RECORDS_TOTAL = Counter(
    "coachstream_malformed_records_total",
    "Stream records skipped because they could not be parsed",
)
