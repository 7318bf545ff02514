"""Streamlit frontend for Manual QA Assistant."""
import asyncio
import os
from typing import List, Optional

import requests
import streamlit as st

from manual_qa.client.stream_consumer import (
    ChatStreamConsumer,
    Conversation,
    ConversationMessage,
    IngestionClient,
    IngestionClientError,
    parse_followups,
)

st.set_page_config(
    page_title="Manual QA Assistant",
    page_icon="📘",
    layout="wide",
)

BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8000")
API_BASE_URL = f"{BACKEND_URL}/api"
HEALTH_URL = f"{BACKEND_URL}/health"

st.markdown("""
    <style>
        #MainMenu {visibility: hidden;}
        footer {visibility: hidden;}

        .page-image {
            border: 1px solid #e5e7eb;
            border-radius: 6px;
        }

        .stButton>button {
            width: 100%;
            font-weight: 600;
            border-radius: 8px;
        }
    </style>
""", unsafe_allow_html=True)

if "conversations" not in st.session_state:
    st.session_state.conversations = {}


def check_backend_health() -> bool:
    try:
        response = requests.get(HEALTH_URL, timeout=2)
        return response.status_code == 200
    except requests.exceptions.RequestException:
        return False


def list_manuals() -> List[dict]:
    try:
        response = requests.get(f"{API_BASE_URL}/documents", timeout=10)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        st.error(f"Could not load manuals: {str(e)}")
        return []


def get_conversation(manual_id: str) -> Conversation:
    conversations = st.session_state.conversations
    if manual_id not in conversations:
        conversations[manual_id] = Conversation(document_id=manual_id)
    return conversations[manual_id]


def render_message(message: ConversationMessage, placeholder=None) -> None:
    """Render one message; assistant answers have their follow-up block split off."""
    target = placeholder or st
    if message.role == "user":
        target.markdown(message.content)
        return

    body, followups = parse_followups(message.content)
    target.markdown(body)
    if followups:
        st.caption("You might ask:")
        for question in followups:
            st.markdown(f"- {question}")
    if message.page_images:
        columns = st.columns(min(len(message.page_images), 4))
        for column, image in zip(columns * 3, message.page_images):
            column.image(f"{BACKEND_URL}{image['url']}", caption=f"Page {image['pageNumber']}")


def send_question(conversation: Conversation, question: str, smooth: bool) -> Optional[str]:
    """Stream one answer into the chat, returning an error message on failure."""
    errors = []
    with st.chat_message("assistant"):
        placeholder = st.empty()

        def on_update(message: ConversationMessage) -> None:
            placeholder.markdown(message.content + " ▌")

        consumer = ChatStreamConsumer(
            base_url=BACKEND_URL,
            smooth_reveal=smooth,
            on_update=on_update,
            on_error=errors.append,
        )
        result = asyncio.run(consumer.send(conversation, question))
        if result is not None:
            placeholder.markdown(parse_followups(result.content)[0])
    return errors[0] if errors else None


def admin_panel() -> None:
    """Upload a PDF manual and process it."""
    st.subheader("Add a manual")
    uploaded = st.file_uploader("PDF manual", type=["pdf"])
    if uploaded is None or not st.button("Upload and process"):
        return

    client = IngestionClient(base_url=BACKEND_URL)
    status = st.empty()
    progress = st.progress(0.0)

    async def run() -> dict:
        try:
            status.info("Uploading...")
            manual = await client.upload(uploaded.name, uploaded.getvalue())
            status.info("Extracting text and page images...")
            ingested = await client.ingest(manual["id"], mode="deferred")
            total = max(ingested.get("chunks", 1), 1)

            def on_progress(step: dict) -> None:
                done = total - step.get("remaining", 0)
                progress.progress(min(done / total, 1.0))
                status.info(f"Embedding chunks: {done}/{total}")

            return await client.run_embeddings(manual["id"], on_progress=on_progress)
        finally:
            await client.close()

    try:
        result = asyncio.run(run())
        progress.progress(1.0)
        status.success(f"Manual ready: {result.get('totalChunks', 0)} chunks embedded")
    except IngestionClientError as e:
        st.toast("Processing failed")
        status.error(f"Processing failed: {str(e)}")


def main():
    st.title("📘 Manual QA Assistant")

    if not check_backend_health():
        st.error("Backend is not reachable. Start it with: uvicorn manual_qa.main:app")
        return

    with st.sidebar:
        manuals = [m for m in list_manuals() if m["status"] == "ready"]
        smooth = st.toggle("Smooth typing", value=True)
        manual = st.selectbox(
            "Manual",
            manuals,
            format_func=lambda m: f"{m['name']} ({m['chunk_count']} chunks)",
        ) if manuals else None
        with st.expander("Admin"):
            admin_panel()

    if manual is None:
        st.info("Upload and process a manual to start asking questions.")
        return

    conversation = get_conversation(manual["id"])
    for message in conversation.messages:
        with st.chat_message(message.role):
            render_message(message)

    question = st.chat_input(f"Ask about {manual['name']}")
    if question:
        with st.chat_message("user"):
            st.markdown(question)
        error = send_question(conversation, question, smooth)
        if error:
            st.toast(error)
        st.rerun()


if __name__ == "__main__":
    main()
