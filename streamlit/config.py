import os

# API Configuration
API_BASE_URL = os.getenv("COACH_CHAT_API_URL", "http://localhost:8000/api/v1")
USER_ID = os.getenv("COACH_CHAT_USER_ID", "demo-user")
TENANT_ID = os.getenv("COACH_CHAT_TENANT_ID", "demo-tenant")
AGENT_ID = os.getenv("COACH_CHAT_AGENT_ID") or None

# Streamlit Configuration
STREAMLIT_CONFIG = {
    "page_title": "Coach Chat",
    "page_icon": "🧭",
    "layout": "wide",
    "initial_sidebar_state": "expanded"
}

# Example Prompts
EXAMPLE_QUESTIONS = [
    "Help me define my ideal client",
    "Write a short poem about launching a business",
    "Draft a landing page for my coaching program",
    "What are my current goals?",
    "Outline a 4-week group coaching curriculum",
]
