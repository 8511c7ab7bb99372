import streamlit as st
import requests
from config import API_BASE_URL, STREAMLIT_CONFIG, EXAMPLE_QUESTIONS, USER_ID, TENANT_ID, AGENT_ID #type: ignore

from coach_chatbot.streaming.events import parse_event
from coach_chatbot.streaming.reducer import ChatState, apply_event

HEADERS = {"X-User-Id": USER_ID, "X-Tenant-Id": TENANT_ID}


def init_session_state():
    """Initialize session state variables"""
    if "conversation_id" not in st.session_state:
        st.session_state.conversation_id = None
    if "messages" not in st.session_state:
        st.session_state.messages = []


def new_conversation():
    st.session_state.conversation_id = None
    st.session_state.messages = []


def list_conversations():
    try:
        response = requests.get(f"{API_BASE_URL}/chat", headers=HEADERS, params={"limit": 20})
        response.raise_for_status()
        return response.json()["conversations"]
    except Exception as e:
        st.sidebar.error(f"Error loading conversations: {str(e)}")
        return []


def load_conversation(conversation_id):
    """Load stored messages and their artifacts into the session"""
    try:
        response = requests.get(f"{API_BASE_URL}/chat/{conversation_id}", headers=HEADERS)
        response.raise_for_status()
    except Exception as e:
        st.error(f"Error loading conversation: {str(e)}")
        return
    messages = []
    for message in response.json()["messages"]:
        artifacts = [
            entry["result"]
            for entry in message.get("toolResults") or []
            if isinstance(entry.get("result"), dict) and "content" in entry["result"]
        ]
        messages.append({"role": message["role"], "content": message["content"], "artifacts": artifacts})
    st.session_state.conversation_id = conversation_id
    st.session_state.messages = messages


def stream_turn(message, on_update):
    """POST one turn and fold each SSE event into a ChatState"""
    payload = {"message": message, "conversationId": st.session_state.conversation_id}
    if AGENT_ID:
        payload["agentId"] = AGENT_ID

    state = ChatState()
    with requests.post(f"{API_BASE_URL}/chat", json=payload, headers=HEADERS, stream=True) as response:
        if response.status_code != 200:
            st.error(f"API Error: {response.status_code} - {response.text}")
            return None
        st.session_state.conversation_id = response.headers.get("X-Conversation-Id")
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data: "):
                continue
            apply_event(state, parse_event(line[len("data: "):]))
            on_update(state)
    return state


def display_artifact(artifact):
    label = f"📄 {artifact['title']} ({artifact['kind']})"
    with st.expander(label, expanded=False):
        if artifact.get("error"):
            st.warning(artifact["error"])
        if artifact["kind"] in ("code", "react"):
            st.code(artifact["content"], language=artifact.get("language") or "tsx")
        elif artifact["kind"] == "html":
            st.code(artifact["content"], language="html")
        else:
            st.markdown(artifact["content"])


def display_message(role, content, artifacts=None):
    """Display a message in the chat interface"""
    with st.chat_message(role):
        st.markdown(content)
        for artifact in artifacts or []:
            display_artifact(artifact)


def handle_prompt(prompt):
    st.session_state.messages.append({"role": "user", "content": prompt})
    display_message("user", prompt)

    with st.chat_message("assistant"):
        text_placeholder = st.empty()
        artifact_placeholder = st.empty()

        def on_update(state):
            text_placeholder.markdown(state.message.text or "🤔 Thinking...")
            building = [a for a in state.artifacts.values() if not a.complete]
            if building:
                artifact_placeholder.info(
                    ", ".join(f"Writing {a.title}... ({len(a.content)} chars)" for a in building)
                )
            else:
                artifact_placeholder.empty()

        try:
            state = stream_turn(prompt, on_update)
        except Exception as e:
            st.error(f"Error sending message: {str(e)}")
            return

    if state is None:
        return
    if state.message.error:
        st.error(state.message.error)
    artifacts = [
        a.model_dump(mode="json") for a in (state.artifacts[i] for i in state.message.artifact_ids)
    ]
    st.session_state.messages.append(
        {"role": "assistant", "content": state.message.text, "artifacts": artifacts}
    )
    st.rerun()


def main():
    st.set_page_config(
        page_title=STREAMLIT_CONFIG["page_title"],
        page_icon=STREAMLIT_CONFIG["page_icon"],
        layout="wide",
        initial_sidebar_state="expanded"
    )

    init_session_state()

    with st.sidebar:
        st.title("🧭 Coach Chat")
        st.markdown("---")

        if st.button("🆕 New Conversation", use_container_width=True):
            new_conversation()
            st.rerun()

        st.markdown("### Recent Conversations")
        for conversation in list_conversations():
            title = conversation.get("title") or "New Chat"
            if st.button(title, key=f"conversation_{conversation['id']}", use_container_width=True):
                load_conversation(conversation["id"])
                st.rerun()

        st.markdown("---")
        st.markdown("### Try asking")
        for question in EXAMPLE_QUESTIONS:
            if st.button(question, key=f"example_{question}"):
                st.session_state.example_question = question
                st.rerun()

    st.title("💬 Coach Chat")

    for message in st.session_state.messages:
        display_message(message["role"], message["content"], message.get("artifacts"))

    if "example_question" in st.session_state:
        prompt = st.session_state.example_question
        del st.session_state.example_question
        handle_prompt(prompt)

    if prompt := st.chat_input("Ask your coach..."):
        handle_prompt(prompt)


if __name__ == "__main__":
    main()
