"""Question answering over the knowledge base.

Flow for one question:
1. Validate the request
2. Answer small talk directly (no retrieval)
3. Retrieve, expand and diversify context chunks
4. Build the grounded prompts and call the generation collaborator
5. Fall back to a templated answer from the retrieved chunks if generation
   is unavailable or fails
"""
import uuid
from typing import List, Literal, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, Field, field_validator

from ragcore import config
from ragcore.conversational import canned_response, match_conversational
from ragcore.llm_client import GenerationResult, OllamaClient
from ragcore.rag.chunker import detect_language
from ragcore.rag.retriever import Retriever, format_context, get_retriever
from ragcore.rag.store_faiss import SearchResult

logger = structlog.get_logger()

NOT_FOUND_ADMISSION = {
    "en": "I don't have specific information about this in the knowledge base",
    "ar": "ليس لدي معلومات محددة حول هذا في قاعدة المعرفة",
}

LANGUAGE_NAMES = {"en": "English", "ar": "Arabic"}

FORMATTING_GUIDELINES = """FORMATTING GUIDELINES:
- Use numbered lists (1., 2., 3.) for sequential steps or ordered information
- Use bullet points (- or *) for unordered lists
- Use **bold** for important terms or headings
- Use `code` for technical terms or file names
- Break complex answers into easy-to-read sections"""

MOCK_TEMPLATES = {
    "en": (
        "Based on {count} document(s), here's what I found about '{question}': "
        "{snippet}... [Answer generation is currently unavailable; "
        "showing excerpts from the knowledge base.]"
    ),
    "ar": (
        "بناءً على {count} مستند(ات)، إليك ما وجدته حول '{question}': "
        "{snippet}... [توليد الإجابات غير متاح حالياً؛ "
        "يتم عرض مقتطفات من قاعدة المعرفة.]"
    ),
}

NO_DOCUMENTS = {
    "en": "No relevant documents found",
    "ar": "لم يتم العثور على مستندات ذات صلة",
}


class ChatRequest(BaseModel):
    """A user question."""
    question: str = Field(..., description="User question", min_length=1)
    session_id: Optional[str] = Field(default=None, description="Conversation id to echo back")
    language: Optional[Literal["en", "ar"]] = Field(
        default=None,
        description="Response language (detected from the question if omitted)",
    )

    @field_validator("question")
    @classmethod
    def question_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Question must not be empty")
        return value


class ChatResponse(BaseModel):
    """An answer with the sources it was grounded on."""
    answer: str
    sources: List[str] = Field(default_factory=list)
    session_id: str


class Generator(Protocol):
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> GenerationResult:
        ...


def _language_instruction(language: str) -> str:
    name = LANGUAGE_NAMES.get(language, "English")
    return (
        f"CRITICAL: You MUST respond in {name} language. "
        f"All your answers must be in {name}."
    )


def build_system_prompt(language: str, has_context: bool) -> str:
    """Build the system prompt.

    With context the model is restricted to it and must admit when the answer
    is not there; without context it must say the information is unavailable.
    """
    if not has_context:
        return (
            "You are a helpful AI assistant. The knowledge base does not contain "
            "information relevant to this question.\n\n"
            "Politely inform the user that the specific information is not "
            "available in the knowledge base, and suggest they:\n"
            "1. Rephrase their question\n"
            "2. Ask about topics that might be in the knowledge base\n"
            "3. Contact support for more detailed information\n\n"
            "Do not provide general knowledge answers.\n"
            f"{_language_instruction(language)}"
        )

    admission = NOT_FOUND_ADMISSION.get(language, NOT_FOUND_ADMISSION["en"])
    return (
        "You are a helpful AI assistant. Answer questions STRICTLY based on the "
        "provided context from the knowledge base.\n\n"
        "IMPORTANT RULES:\n"
        "1. ONLY use information from the context provided below\n"
        "2. If the context contains relevant information, provide a detailed answer\n"
        "3. If the context does NOT contain relevant information, clearly state: "
        f"'{admission}'\n"
        "4. DO NOT use general knowledge or make assumptions\n"
        "5. Cite the source when providing information\n"
        "6. Keep answers clear and well-structured\n"
        f"7. {_language_instruction(language)}\n\n"
        f"{FORMATTING_GUIDELINES}"
    )


def build_user_prompt(question: str, results: List[SearchResult]) -> str:
    if not results:
        return (
            f"Question: {question}\n\n"
            "The knowledge base does not contain relevant information for this question."
        )

    return (
        f"Context from knowledge base:\n{format_context(results)}\n\n"
        f"Question: {question}\n\n"
        "Please provide a clear, well-formatted answer based ONLY on the context above."
    )


def build_mock_answer(question: str, results: List[SearchResult], language: str) -> str:
    """Templated answer from the top two chunks, used when generation is unavailable."""
    if language not in MOCK_TEMPLATES:
        language = "en"

    if results:
        snippet = " ... ".join(r.chunk.content[:100] for r in results[:2])
    else:
        snippet = NO_DOCUMENTS[language]

    return MOCK_TEMPLATES[language].format(
        count=len(distinct_sources(results)),
        question=question,
        snippet=snippet,
    )


def distinct_sources(results: List[SearchResult]) -> List[str]:
    sources: List[str] = []
    for result in results:
        if result.source not in sources:
            sources.append(result.source)
    return sources


class ChatService:
    """Answers questions with retrieval-augmented generation."""

    def __init__(
        self,
        retriever: Retriever,
        generator: Optional[Generator] = None,
        model: str = None,
        temperature: float = None,
        max_tokens: int = None,
        language_filter: bool = None,
    ):
        """Initialize the chat service.

        Args:
            retriever: Retriever for context chunks
            generator: Generation collaborator; None always answers from the template
            model: Generation model name (default from config)
            temperature: Sampling temperature (default from config)
            max_tokens: Maximum generated tokens (default from config)
            language_filter: Restrict retrieval to chunks in the answer language
        """
        self.retriever = retriever
        self.generator = generator
        self.model = model or config.CHAT_MODEL
        self.temperature = config.GENERATION_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.GENERATION_MAX_TOKENS
        self.language_filter = (
            config.LANGUAGE_FILTER_ENABLED if language_filter is None else language_filter
        )

    async def ask(
        self,
        request: Union[ChatRequest, str],
        language: Optional[str] = None,
    ) -> ChatResponse:
        """Answer a question.

        Args:
            request: ChatRequest or the bare question text
            language: Response language override ("en" or "ar")

        Returns:
            ChatResponse with the answer, source names and session id

        Raises:
            ValueError: If the question is empty (pydantic ValidationError)
        """
        if isinstance(request, str):
            request = ChatRequest(question=request, language=language)
        elif language:
            request = ChatRequest(
                question=request.question,
                session_id=request.session_id,
                language=language,
            )

        question = request.question
        language = request.language or detect_language(question)

        category = match_conversational(question)
        if category is not None:
            logger.info("conversational_message_detected", category=category, language=language)
            return ChatResponse(
                answer=canned_response(category, language),
                sources=[],
                session_id=str(uuid.uuid4()),
            )

        session_id = request.session_id or str(uuid.uuid4())
        logger.info(
            "chat_request",
            session_id=session_id,
            question_preview=question[:100],
            language=language,
        )

        results = await self.retriever.retrieve(
            question,
            language=language if self.language_filter else None,
        )
        sources = distinct_sources(results)

        answer = await self._generate_answer(question, results, language)

        logger.info(
            "chat_response",
            session_id=session_id,
            chunks=len(results),
            sources=sources,
            answer_length=len(answer),
        )
        return ChatResponse(answer=answer, sources=sources, session_id=session_id)

    async def _generate_answer(
        self,
        question: str,
        results: List[SearchResult],
        language: str,
    ) -> str:
        if self.generator is None:
            logger.info("generation_disabled_using_template")
            return build_mock_answer(question, results, language)

        system_prompt = build_system_prompt(language, has_context=bool(results))
        user_prompt = build_user_prompt(question, results)

        try:
            result = await self.generator.generate(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            logger.error(
                "generation_failed_using_template",
                error=str(e),
                error_type=type(e).__name__,
                model=self.model,
            )
            return build_mock_answer(question, results, language)

        answer = (result.text or "").strip()
        if not answer:
            logger.warning("generation_empty_using_template", model=self.model)
            return build_mock_answer(question, results, language)

        logger.info("generation_completed", model=self.model, token_usage=result.token_usage)
        return answer


async def get_chat_service() -> ChatService:
    """Build a ChatService from config (Ollama generation unless disabled)."""
    retriever = await get_retriever()
    generator = OllamaClient() if config.GENERATION_ENABLED else None
    return ChatService(retriever=retriever, generator=generator)
