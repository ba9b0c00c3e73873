# transfer_common/protocol.py

HOST = '127.0.0.1'  # Standard loopback interface address (localhost)
PORT = 8080         # Port to listen on (non-privileged ports are > 1023)
BUFFER_SIZE = 4096  # Bytes pulled from a readable socket per read
PACKET_SIZE = 1024  # Raw file bytes carried by one data frame
MAX_WINDOW_SIZE = 65535

UPLOAD_DIR = "uploads"
DOWNLOAD_DIR = "downloads"

# Engine timing (seconds)
SERVER_SELECT_TIMEOUT = 1.0
CLIENT_SELECT_TIMEOUT = 0.1
IDLE_TIMEOUT = 60.0
PING_INTERVAL = 10.0
METRICS_INTERVAL = 0.5
ACK_TIMEOUT = 1.0
CONNECT_TIMEOUT = 10.0

# Sender throttles
MAX_PENDING_FRAMES = 50
BACKPRESSURE_SLEEP = 0.01
WINDOW_POLL_SLEEP = 0.01

# Congestion control defaults
INITIAL_CWND = 1.0
INITIAL_SSTHRESH = 64.0
INITIAL_RTT_MS = 100.0
RTT_SAMPLES = 10
THROUGHPUT_INTERVAL_MS = 1000

HISTORY_POINTS = 100  # Metric samples kept per session for charts
MAX_EVENTS = 500      # Events kept for the presentation layer

# Client commands
CMD_LIST_FILES = "LIST_FILES"
CMD_DOWNLOAD = "DOWNLOAD"
CMD_UPLOAD = "UPLOAD"
CMD_UPLOAD_DATA = "UPLOAD_DATA"
CMD_ALGORITHM = "ALGORITHM"
CMD_PING = "PING"

# Server responses
RESP_FILE_LIST = "FILE_LIST"
RESP_DOWNLOAD_START = "DOWNLOAD_START"
RESP_FILE_DATA = "FILE_DATA"
RESP_DOWNLOAD_COMPLETE = "DOWNLOAD_COMPLETE"
RESP_UPLOAD_READY = "UPLOAD_READY"
RESP_UPLOAD_COMPLETE = "UPLOAD_COMPLETE"
RESP_PONG = "PONG"

# Either direction
CMD_ACK = "ACK"
CMD_NACK = "NACK"
CMD_ERROR = "ERROR"

# Separators
NAME_SEPARATOR = ":"    # Between command name and payload
FIELD_SEPARATOR = ";"   # Between fields of a payload (filename;size)
