"""Text generation over OpenAI-compatible chat completion APIs."""

import re
from typing import List, Optional, Tuple

from loguru import logger

from ..api.client import HTTPClient
from ..api.exceptions import TransientError
from .base import AIProvider


SUMMARY_MAX_LENGTH = 250
TITLE_MAX_LENGTH = 70


def truncate(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length`` characters, marking the cut."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + '...'


# Stand-ins used when an optional enrichment request fails

def fallback_summary(text: str, max_length: int = SUMMARY_MAX_LENGTH) -> str:
    return truncate(text.strip(), max_length)


def fallback_title(current: Optional[str]) -> str:
    return current or 'Untitled'


def fallback_keywords(text: str, max_keywords: int = 10) -> List[str]:
    """Long words of the text, in order of first appearance."""
    keywords: List[str] = []
    for word in text.split():
        word = word.strip('.,;:!?()[]{}"\'')
        if len(word) > 5 and word not in keywords:
            keywords.append(word)
        if len(keywords) >= max_keywords:
            break
    return keywords


class ChatCompletionProvider(AIProvider):
    """Summaries, titles and keywords from a chat completion endpoint."""

    DEFAULT_MODEL = ''
    # Empty means any model name is accepted
    AVAILABLE_MODELS: Tuple[str, ...] = ()

    def __init__(
        self,
        client: HTTPClient,
        model: str,
        summary_max_length: int = SUMMARY_MAX_LENGTH,
        title_max_length: int = TITLE_MAX_LENGTH,
    ):
        self.client = client
        self.model = model
        self.summary_max_length = summary_max_length
        self.title_max_length = title_max_length

    @classmethod
    def resolve_model(cls, model: Optional[str]) -> str:
        """Pick the model to request, falling back to the default for unknown names."""
        if not model:
            return cls.DEFAULT_MODEL
        if cls.AVAILABLE_MODELS and model not in cls.AVAILABLE_MODELS:
            logger.bind(component='AI').warning(
                f"Model '{model}' is not supported by {cls.__name__}, "
                f"using '{cls.DEFAULT_MODEL}'"
            )
            return cls.DEFAULT_MODEL
        return model

    async def _complete(self, prompt: str) -> str:
        response = await self.client.post(
            '/chat/completions',
            data={
                'model': self.model,
                'messages': [{'role': 'user', 'content': prompt}],
            },
        )
        try:
            return response.data['choices'][0]['message']['content'].strip()
        except (KeyError, IndexError, TypeError):
            raise TransientError(f'Unexpected completion payload from {self.model}')

    async def summarize(self, text: str) -> str:
        summary = await self._complete(
            'Write a concise summary of at most three sentences of the following '
            'technical article. Mention the key technologies, concepts and '
            'takeaways. Reply with the summary only, without any prefix.\n\n'
            + truncate(text, 6000)
        )
        return truncate(summary, self.summary_max_length)

    async def title(self, text: str, current: Optional[str] = None) -> str:
        content = truncate(text, 2000)
        if current:
            prompt = (
                f'Suggest an engaging, search-friendly title for the content below. '
                f'The current title is "{current}"; keep it if it is already good. '
                f'Use at most {self.title_max_length} characters. Reply with the '
                f'title only.\n\n{content}'
            )
        else:
            prompt = (
                f'Write an engaging, search-friendly title of at most '
                f'{self.title_max_length} characters for the content below. '
                f'Reply with the title only.\n\n{content}'
            )
        title = await self._complete(prompt)
        # Models like to wrap titles in quotes
        title = re.sub(r'^[\'"](.*)[\'"]$', r'\1', title)
        return truncate(title, self.title_max_length)

    async def keywords(self, text: str, max_keywords: int = 10) -> List[str]:
        reply = await self._complete(
            f'Extract {max_keywords} relevant keywords or keyphrases from the '
            f'content below, suitable as tags. Reply with a comma-separated list '
            f'only.\n\n' + truncate(text, 3000)
        )
        keywords = [word.strip() for word in re.split(r',\s*', reply)]
        return [word for word in keywords if word][:max_keywords]

    async def validate_content(self, text: str, rules: List[str]) -> bool:
        rules_text = '\n'.join(
            f'Rule {index}: {rule}' for index, rule in enumerate(rules, start=1)
        )
        reply = await self._complete(
            'Validate if the following content complies with all the rules '
            'specified. Respond with ONLY "true" if all rules are satisfied, or '
            '"false" if any rule is violated.\n\n'
            f'RULES:\n{rules_text}\n\nCONTENT:\n' + truncate(text, 3000)
        )
        return reply.strip().lower() == 'true'


class DeepSeekProvider(ChatCompletionProvider):
    """DeepSeek chat models."""

    BASE_URL = 'https://api.deepseek.com/v1'
    DEFAULT_MODEL = 'deepseek-chat'
    AVAILABLE_MODELS = ('deepseek-reasoner', 'deepseek-chat')


class OpenAIProvider(ChatCompletionProvider):
    """OpenAI chat models."""

    BASE_URL = 'https://api.openai.com/v1'
    DEFAULT_MODEL = 'gpt-4o-mini'
