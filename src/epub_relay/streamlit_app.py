import json
import os
import queue
import threading
import time

import requests
import streamlit as st

API_BASE = os.getenv("EPUB_RELAY_API_BASE", os.getenv("API_BASE", "http://localhost:3000")).rstrip("/")
CONVERT_TIMEOUT = float(os.getenv("EPUB_RELAY_UI_TIMEOUT", "900"))
TOTAL_STEPS = 5


def _reset_state() -> None:
    for key in ["events", "result", "error"]:
        if key in st.session_state:
            del st.session_state[key]


def _listen(events: "queue.Queue[dict[str, object]]", stop: threading.Event, holder: dict[str, object]) -> None:
    """Read the /status event stream and push decoded payloads onto `events`.

    The UI thread closes `holder["response"]` once the conversion is over, so
    the read ends without waiting for the next keep-alive.
    """
    try:
        with requests.get(f"{API_BASE}/status", stream=True, timeout=(10, None)) as resp:
            holder["response"] = resp
            if stop.is_set():
                return
            for line in resp.iter_lines(decode_unicode=True):
                if stop.is_set():
                    return
                if not line or not line.startswith("data:"):
                    continue
                try:
                    events.put(json.loads(line[len("data:"):].strip()))
                except ValueError:
                    continue
    except requests.RequestException:
        # The stream is advisory; the /convert response still reports the outcome.
        return
    except Exception:
        # closing the response from the UI thread interrupts the blocked read
        if not stop.is_set():
            raise


def _stop_listening(stop: threading.Event, holder: dict[str, object]) -> None:
    stop.set()
    resp = holder.get("response")
    if isinstance(resp, requests.Response):
        resp.close()


def _start_conversion(url: str, out: dict[str, object]) -> None:
    try:
        resp = requests.post(f"{API_BASE}/convert", json={"epubUrl": url}, timeout=CONVERT_TIMEOUT)
    except Exception as e:
        out["error"] = f"Failed to connect to API: {e}"
        return
    if resp.status_code == 200:
        out["result"] = resp.json()
        return
    try:
        detail = resp.json().get("detail", {})
    except ValueError:
        detail = {}
    if isinstance(detail, dict) and detail.get("message"):
        stage = detail.get("stage")
        out["error"] = f"{detail['message']} (stage: {stage})" if stage else str(detail["message"])
    else:
        out["error"] = f"Conversion failed: {resp.status_code} {resp.text}"


def main() -> None:
    st.set_page_config(page_title="EPUB Relay", page_icon="📚", layout="centered")
    st.title("📚 EPUB to PDF")
    st.caption(f"API base: {API_BASE}")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    url = st.text_input("EPUB URL", placeholder="https://example.org/book.epub")

    if url and st.button("Convert", type="primary"):
        _reset_state()
        events: "queue.Queue[dict[str, object]]" = queue.Queue()
        stop = threading.Event()
        holder: dict[str, object] = {}
        listener = threading.Thread(target=_listen, args=(events, stop, holder), daemon=True)
        listener.start()
        # Let the stream register before the first event is published
        time.sleep(0.5)

        outcome: dict[str, object] = {}
        worker = threading.Thread(target=_start_conversion, args=(url, outcome), daemon=True)
        worker.start()

        seen: list[dict[str, object]] = []
        with st.status("Converting...", expanded=True) as status_box:
            text_slot = st.empty()
            prog_slot = st.empty()
            while worker.is_alive() or not events.empty():
                try:
                    event = events.get(timeout=0.5)
                except queue.Empty:
                    continue
                seen.append(event)
                step = int(event.get("step", TOTAL_STEPS) or TOTAL_STEPS)
                text_slot.write(f"Status: {event.get('status', 'unknown')}")
                prog_slot.progress(min(max(step, 0), TOTAL_STEPS) / TOTAL_STEPS)
            _stop_listening(stop, holder)
            if "error" in outcome:
                status_box.update(label="Conversion failed", state="error")
            else:
                status_box.update(label="Conversion complete", state="complete")

        st.session_state["events"] = seen
        if "error" in outcome:
            st.session_state["error"] = outcome["error"]
        else:
            st.session_state["result"] = outcome.get("result")

    if "result" in st.session_state:
        st.success("Conversion complete! The PDF has been uploaded.")

    if events_seen := st.session_state.get("events"):
        with st.expander("Progress events"):
            st.json(events_seen)

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
