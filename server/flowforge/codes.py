"""Numeric message type codes used by the FlowForge WebSocket protocol."""

# Requests sent by clients
REQUEST_NODE_TYPES = 100
REQUEST_CREATE_NODE = 101
REQUEST_RUN_FLOW = 102
REQUEST_STOP_RUN = 103
REQUEST_CLEAR_RESULTS = 104

REQUEST_TYPES = frozenset(
    {
        REQUEST_NODE_TYPES,
        REQUEST_CREATE_NODE,
        REQUEST_RUN_FLOW,
        REQUEST_STOP_RUN,
        REQUEST_CLEAR_RESULTS,
    }
)

# Successful responses and server-initiated updates
CODE_NODE_TYPES = 200
CODE_NODE_CREATED = 201
CODE_RUN_STARTED = 202
CODE_RUN_STOPPED = 203
CODE_RESULTS_CLEARED = 204
CODE_NODE_STATUS = 205
CODE_RUN_FINISHED_OK = 206

# Errors
CODE_NODE_CREATE_ERROR = 301
CODE_RUN_ERROR = 302
CODE_STOP_RUN_ERROR = 303
CODE_RUN_IN_PROGRESS = 304
CODE_CLEAR_RESULTS_ERROR = 305
CODE_RUN_FINISHED_ERROR = 306
CODE_MESSAGE_ID_ERROR = 395
CODE_UNKNOWN_TYPE = 396
