"""Nested structured generation behind the ``create_artifact`` tool.

Each artifact is one sub-stream on the turn's outbound queue:
``artifact-metadata`` first, then ``artifact-delta`` fragments, then exactly one
``artifact-complete``, also when generation fails part way.
"""

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from coach_chatbot.exceptions import ToolExecutionError
from coach_chatbot.llm.provider import ChatProvider
from coach_chatbot.streaming.events import (
    ArtifactCompleteEvent,
    ArtifactDeltaEvent,
    ArtifactDocument,
    ArtifactKind,
    ArtifactMetadataEvent,
    StreamEvent,
)

if TYPE_CHECKING:
    from coach_chatbot.streaming.tools import CreateArtifact

logger = logging.getLogger(__name__)

Emit = Callable[[StreamEvent], Awaitable[None]]

ARTIFACT_PROMPTS = {
    ArtifactKind.TEXT: (
        "Write about the given topic. Use markdown formatting with headings, lists, "
        "and emphasis where appropriate. Be thorough and well-structured."
    ),
    ArtifactKind.CODE: (
        "Write clean, well-commented code for the given task. Include imports, type "
        "definitions where the language has them, and example usage."
    ),
    ArtifactKind.HTML: (
        "Create a complete HTML page for the given task. Include proper HTML5 "
        "structure, inline CSS for styling, and any necessary JavaScript."
    ),
    ArtifactKind.REACT: (
        "Create a React component for the given task. Use modern React patterns "
        "(hooks, functional components). Include TypeScript types and proper prop handling."
    ),
}


class ArtifactGenerator:
    def __init__(self, provider: ChatProvider, emit: Emit) -> None:
        self.provider = provider
        self.emit = emit

    @staticmethod
    def build_prompt(request: "CreateArtifact") -> list:
        system = ARTIFACT_PROMPTS[request.kind]
        if request.language:
            system += f"\nWrite the code in {request.language}."
        task = request.description or request.title
        return [
            SystemMessage(content=system),
            HumanMessage(content=f"Title: {request.title}\nKind: {request.kind.value}\n\n{task}"),
        ]

    async def generate(
        self, artifact_id: str, request: "CreateArtifact"
    ) -> tuple[ArtifactDocument, Optional[str]]:
        """
        Stream one artifact onto the outbound queue.

        Deltas are only emitted for growth of the accumulated content, so the
        concatenated deltas always equal the final content. Returns the final
        document and an error string when the nested generation failed.
        """
        await self.emit(
            ArtifactMetadataEvent(id=artifact_id, title=request.title, kind=request.kind)
        )

        content = ""
        language = request.language
        error = None
        try:
            async for partial in self.provider.stream_structured(
                self.build_prompt(request), ArtifactDocument
            ):
                grown = partial.get("content")
                if isinstance(grown, str) and len(grown) > len(content) and grown.startswith(content):
                    delta = grown[len(content):]
                    content = grown
                    await self.emit(ArtifactDeltaEvent(id=artifact_id, content=delta))
                if isinstance(partial.get("language"), str):
                    language = partial["language"]
        except Exception as e:
            failure = ToolExecutionError(f"Artifact generation failed: {e}")
            logger.warning(f"{failure.message} (artifact {artifact_id})", exc_info=True)
            error = failure.message

        document = ArtifactDocument(
            title=request.title, kind=request.kind, content=content, language=language
        )
        await self.emit(ArtifactCompleteEvent(id=artifact_id, final_object=document, error=error))
        logger.info(
            f"Artifact {artifact_id} complete: {len(content)} chars"
            + (" (failed)" if error else "")
        )
        return document, error
