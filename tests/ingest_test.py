from coach_chatbot.workers.ingest import CHUNK_SIZE, ChunkState, chunk_content, clean_text


def test_clean_text_collapses_spaces_but_keeps_paragraphs():
    raw = "Offer   design\r\n\r\n\r\n\r\nPricing\t\ttiers  "

    assert clean_text(raw) == "Offer design\n\nPricing tiers"


def test_chunk_content_indexes_chunks_within_size():
    paragraphs = [f"Paragraph {i}: " + "coaching insight " * 30 for i in range(10)]

    chunks = chunk_content("\n\n".join(paragraphs), "tenant-1", "kb-1", "doc-1", {"source": "guide.md"})

    assert len(chunks) > 1
    assert [c["chunk_index"] for c in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert len(chunk["content"]) <= CHUNK_SIZE
        assert chunk["state"] == ChunkState.PROCESSED.value
        assert chunk["chunk_metadata"] == {"source": "guide.md", "length": len(chunk["content"])}
        assert (chunk["tenant_id"], chunk["knowledge_base_id"], chunk["document_id"]) == (
            "tenant-1", "kb-1", "doc-1"
        )


def test_chunk_content_of_blank_document_is_empty():
    assert chunk_content(" \n\n ", "tenant-1", "kb-1", "doc-1") == []
