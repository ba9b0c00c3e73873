# streamlit_app.py
import logging
import os
import time

import streamlit as st

from transfer_client.client import Client
from transfer_common.config import ClientConfig, ServerConfig
from transfer_common.congestion import Algorithm
from transfer_common.errors import ConfigurationError
from transfer_common.events import EventChannelHandler
from transfer_common.protocol import DOWNLOAD_DIR, HOST as DEFAULT_HOST, PORT as DEFAULT_PORT, UPLOAD_DIR
from transfer_server.server import Server

REFRESH_SECONDS = 0.5
ALGORITHMS = [a.value for a in Algorithm]

st.set_page_config(page_title="File Transfer - Congestion Control Visualizer", layout="wide")

# --- Session State Initialization ---
if 'engine' not in st.session_state:  # Client or Server instance while running
    st.session_state.engine = None
if 'role' not in st.session_state:
    st.session_state.role = "Client"
if 'server_host' not in st.session_state:
    st.session_state.server_host = DEFAULT_HOST
if 'server_port' not in st.session_state:
    st.session_state.server_port = DEFAULT_PORT
if 'storage_dirs' not in st.session_state:  # role -> directory
    st.session_state.storage_dirs = {'Client': DOWNLOAD_DIR, 'Server': UPLOAD_DIR}
if 'server_files' not in st.session_state:
    st.session_state.server_files = []
if 'transfer_status' not in st.session_state:  # filename -> status dict
    st.session_state.transfer_status = {}
if 'log_messages' not in st.session_state:
    st.session_state.log_messages = []
if 'log_handler' not in st.session_state:
    st.session_state.log_handler = None


# --- Helper Functions ---
def add_log(message_text):
    timestamp = time.strftime("%H:%M:%S")
    st.session_state.log_messages.insert(0, f"{timestamp} - {message_text}")
    del st.session_state.log_messages[200:]


def attach_logging(engine):
    """Mirror engine log records into its event channel for the log view."""
    detach_logging()
    handler = EventChannelHandler(engine.events)
    logging.getLogger("transfer_common").addHandler(handler)
    logging.getLogger("transfer_server").addHandler(handler)
    logging.getLogger("transfer_client").addHandler(handler)
    logging.getLogger().setLevel(logging.INFO)
    st.session_state.log_handler = handler


def detach_logging():
    handler = st.session_state.log_handler
    if handler is not None:
        for name in ("transfer_common", "transfer_server", "transfer_client"):
            logging.getLogger(name).removeHandler(handler)
    st.session_state.log_handler = None


def process_events(engine):
    for event in engine.events.drain():
        filename = event.get('filename')
        if event['type'] == 'log':
            st.session_state.log_messages.insert(0, event['message'])
            del st.session_state.log_messages[200:]
        elif event['type'] == 'file_list':
            st.session_state.server_files = event['files']
        elif event['type'] == 'transfer_started' and filename:
            st.session_state.transfer_status[filename] = {
                'direction': event['direction'], 'message': 'In progress...',
                'completed': False, 'error': False,
            }
        elif event['type'] == 'transfer_complete' and filename:
            status = st.session_state.transfer_status.setdefault(filename, {})
            status.update(completed=True, error=False,
                          message=f"Completed ({event.get('size', 0)} bytes) {event.get('path', '')}")
        elif event['type'] == 'transfer_failed':
            key = filename or "(request)"
            status = st.session_state.transfer_status.setdefault(key, {})
            status.update(completed=False, error=True, message=event['reason'])


def start_engine():
    role = st.session_state.role
    try:
        if role == "Server":
            engine = Server(ServerConfig(port=int(st.session_state.server_port),
                                         storage_dir=st.session_state.storage_dirs[role]))
            attach_logging(engine)
            engine.start()
            msg = f"Server started on port {engine.port}"
        else:
            engine = Client(ClientConfig(host=st.session_state.server_host,
                                         port=int(st.session_state.server_port),
                                         storage_dir=st.session_state.storage_dirs[role]))
            attach_logging(engine)
            connected, msg = engine.connect()
            if not connected:
                detach_logging()
                st.error(msg)
                add_log(msg)
                return
    except (ConfigurationError, OSError) as e:
        detach_logging()
        st.error(f"Could not start {role.lower()}: {e}")
        add_log(f"Could not start {role.lower()}: {e}")
        return
    st.session_state.engine = engine
    st.success(msg)
    add_log(msg)


def stop_engine():
    engine = st.session_state.engine
    if engine is not None:
        engine.stop()
        process_events(engine)
    detach_logging()
    st.session_state.engine = None
    st.session_state.server_files = []
    add_log("Stopped.")


def show_metrics(engine, label):
    snapshot = engine.snapshots().get(label)
    if snapshot is None:
        st.caption("Session closed.")
        return
    c1, c2, c3, c4, c5 = st.columns(5)
    c1.metric("CWND", f"{snapshot.congestion_window:.2f}")
    c2.metric("SSThresh", f"{snapshot.slow_start_threshold:.2f}")
    c3.metric("RTT", f"{snapshot.smoothed_rtt:.1f} ms")
    c4.metric("Throughput", f"{snapshot.current_throughput / 1_000_000:.3f} Mbps")
    c5.metric("Packet loss", f"{snapshot.packet_loss_rate * 100:.2f} %")
    st.caption(f"Algorithm: {snapshot.algorithm} | Slow start: {snapshot.in_slow_start} | "
               f"Receive window: {snapshot.receive_window_cap} | Queue: {snapshot.queue_depth} frames")
    if snapshot.filename:
        st.progress(snapshot.transfer_progress,
                    text=f"{snapshot.direction.title()}: {snapshot.filename}")

    history = engine.history(label)
    if len(history) > 1:
        left, right = st.columns(2)
        with left:
            st.caption("Congestion window")
            st.line_chart({'cwnd': [s.congestion_window for s in history],
                           'ssthresh': [s.slow_start_threshold for s in history]})
            st.caption("Throughput (Mbps)")
            st.line_chart({'Mbps': [s.current_throughput / 1_000_000 for s in history]})
        with right:
            st.caption("Round trip time (ms)")
            st.line_chart({'RTT': [s.smoothed_rtt for s in history]})
            st.caption("Packet loss (%)")
            st.line_chart({'loss': [s.packet_loss_rate * 100 for s in history]})


# --- UI ---
st.title("📁 File Transfer - Congestion Control Visualizer")
engine = st.session_state.engine
if engine is not None:
    process_events(engine)
    if not engine.running:
        add_log(f"{engine.role} stopped.")
        detach_logging()
        st.session_state.engine = None
        engine = None

with st.sidebar:
    st.header("Connection")
    running = engine is not None
    st.session_state.role = st.radio("Role", ["Client", "Server"], horizontal=True, disabled=running,
                                     index=0 if st.session_state.role == "Client" else 1)
    if st.session_state.role == "Client":
        st.session_state.server_host = st.text_input("Server Host", value=st.session_state.server_host,
                                                     disabled=running)
    st.session_state.server_port = st.number_input("Port", value=int(st.session_state.server_port),
                                                   min_value=1, max_value=65535, step=1, disabled=running)
    role = st.session_state.role
    label = "Download Directory" if role == "Client" else "Upload Directory"
    st.session_state.storage_dirs[role] = st.text_input(label, value=st.session_state.storage_dirs[role])

    if not running:
        if st.button("🔗 Start"):
            start_engine()
            st.rerun()
    else:
        st.success(f"✅ {engine.role} running ({engine.host}:{engine.port})")
        if isinstance(engine, Server) and st.session_state.storage_dirs['Server'] != engine.storage_dir:
            if st.button("📂 Apply Upload Directory"):
                engine.set_storage_dir(st.session_state.storage_dirs['Server'])
        if st.button("🔌 Stop"):
            stop_engine()
            st.rerun()

    st.markdown("---")
    st.subheader("📜 Log")
    log_container = st.container(height=250)
    with log_container:
        for msg_text in st.session_state.log_messages:
            st.caption(msg_text)

if engine is None:
    st.info("Start a client or server using the sidebar.")
elif isinstance(engine, Server):
    snapshots = engine.snapshots()
    st.subheader(f"Active Clients: {len(snapshots)}")
    st.caption(f"Serving files from: `{os.path.abspath(engine.storage_dir)}`")
    if snapshots:
        labels = sorted(snapshots)
        for tab, client_label in zip(st.tabs(labels), labels):
            with tab:
                current = snapshots[client_label].algorithm
                chosen = st.selectbox("TCP Algorithm", ALGORITHMS, index=ALGORITHMS.index(current),
                                      key=f"algo-{client_label}")
                if chosen != current:
                    ok, msg = engine.switch_algorithm(client_label, chosen)
                    add_log(msg)
                show_metrics(engine, client_label)
else:
    col1, col2 = st.columns([2, 3])
    with col1:
        st.subheader("📄 Server Files")
        if st.button("🔄 Refresh File List"):
            ok, msg = engine.request_list_files()
            add_log(msg)

        if not st.session_state.server_files:
            st.info("No files on server or list not refreshed.")
        else:
            names = [name for name, _size in st.session_state.server_files]
            sizes = dict(st.session_state.server_files)
            selected = st.selectbox("Select file to download:", options=names,
                                    format_func=lambda n: f"{n} ({sizes.get(n, '?')})")
            if st.button("⬇️ Download"):
                ok, msg = engine.request_download_file(selected)
                (st.info if ok else st.warning)(msg)
                add_log(msg)

        st.subheader("⬆️ Upload")
        upload_path = st.text_input("Local file path")
        if st.button("Upload File") and upload_path:
            ok, msg = engine.request_upload_file(upload_path)
            (st.info if ok else st.warning)(msg)
            add_log(msg)

        st.subheader("⚙️ TCP Algorithm")
        snapshot = engine.snapshots().get(engine.handler.label) if engine.handler else None
        current = snapshot.algorithm if snapshot else Algorithm.RENO.value
        chosen = st.selectbox("Algorithm", ALGORITHMS, index=ALGORITHMS.index(current))
        if chosen != current:
            ok, msg = engine.switch_algorithm(chosen)
            add_log(msg)

    with col2:
        st.subheader("📈 Network Metrics")
        if engine.handler is not None:
            show_metrics(engine, engine.handler.label)

        st.subheader("📥 Transfers")
        if not st.session_state.transfer_status:
            st.caption("No transfers yet.")
        for filename_key, status in st.session_state.transfer_status.items():
            message = status.get('message', 'Status unknown')
            if status.get('error'):
                st.error(f"**{filename_key}**: {message}", icon="🔥")
            elif status.get('completed'):
                st.success(f"**{filename_key}**: {message}", icon="✅")
            else:
                st.caption(f"**{filename_key}**: {message}")

if st.session_state.engine is not None:
    time.sleep(REFRESH_SECONDS)  # refresh about twice per second
    st.rerun()
