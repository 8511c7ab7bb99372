import logging
from functools import cache

from langchain_community.embeddings import HuggingFaceEmbeddings

from coach_chatbot.settings import config

logger = logging.getLogger(__name__)


@cache
def get_embedding_model() -> HuggingFaceEmbeddings:
    # loading the model pulls in torch, so only do it on first use
    import torch

    device = "cuda" if torch.cuda.is_available() else "cpu"
    logger.info(f"Loading embedding model {config.huggingface_model} on {device}")
    return HuggingFaceEmbeddings(
        model_name=config.huggingface_model,
        model_kwargs={"device": device},
    )


def embed_query(text_query: str) -> list[float]:
    return get_embedding_model().embed_query(text_query)


def embed_documents(texts: list[str]) -> list[list[float]]:
    return get_embedding_model().embed_documents(texts)
