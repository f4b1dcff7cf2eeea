from prometheus_client import Counter, Histogram

request_counter = Counter(
    "pipebot_num_req", "Total number of requests", labelnames=["path"]
)

activity_counter = Counter(
    "pipebot_num_activity",
    "Total number of pipeline activities received",
    labelnames=["result"],
)

event_counter = Counter(
    "pipebot_num_event", "Total number of handled events", labelnames=["flow"]
)

event_duration_seconds = Histogram(
    "pipebot_event_duration_seconds",
    "Time spent handling one event",
    labelnames=["flow"],
)

message_action_counter = Counter(
    "pipebot_num_message_action",
    "Number of message decisions by action",
    labelnames=["type", "action"],
)

stale_update_counter = Counter(
    "pipebot_num_stale_update",
    "Number of review updates dropped because a newer build exists",
)

rule_error_counter = Counter(
    "pipebot_num_rule_error",
    "Number of rules that failed while handling an event",
    labelnames=["flow", "error"],
)

error_counter = Counter(
    "pipebot_error_counter", "Total number of errors", labelnames=["context"]
)

activity_pruned_total = Counter(
    "pipebot_activity_pruned_total",
    "Number of stored activities pruned by retention",
)

api_call_count = Counter("pipebot_num_api_calls", "Total number of GitHub API calls")
