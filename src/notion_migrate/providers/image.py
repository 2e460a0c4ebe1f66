"""Asynchronous image generation on DashScope."""

from ..api.client import HTTPClient
from ..api.exceptions import TransientError
from .base import ImageProvider, RemoteTaskResult

NEGATIVE_PROMPT = (
    'text, words, letters, numbers, captions, watermark, signature, blurry, '
    'low quality, distorted, photograph, human faces, hands, cluttered layout'
)

REMOTE_STATUS = {
    'PENDING': 'pending',
    'RUNNING': 'running',
    'SUCCEEDED': 'succeeded',
    'FAILED': 'failed',
    'CANCELED': 'failed',
    'UNKNOWN': 'failed',
}


def build_image_prompt(subject: str) -> str:
    """Wrap a subject in the house illustration style."""
    subject = subject.replace('"', '').replace("'", '').strip()
    return (
        f'A clean technical illustration of the concept "{subject}" in a '
        f'minimalist digital environment. Modern flat style, balanced frontal '
        f'composition, soft even lighting, palette of blues, teals and neutral '
        f'tones. Entirely visual, with no text, labels or characters.'
    )


class DashScopeImageProvider(ImageProvider):
    """Text-to-image jobs on DashScope's async task API."""

    BASE_URL = 'https://dashscope.aliyuncs.com/api/v1'

    def __init__(
        self, client: HTTPClient, model: str = 'wanx2.1-t2i-turbo', size: str = '1024*1024'
    ):
        self.client = client
        self.model = model
        self.size = size

    async def create_task(self, prompt: str) -> str:
        response = await self.client.post(
            '/services/aigc/text2image/image-synthesis',
            data={
                'model': self.model,
                'input': {
                    'prompt': build_image_prompt(prompt),
                    'negative_prompt': NEGATIVE_PROMPT,
                },
                'parameters': {'size': self.size, 'n': 1},
            },
            headers={'X-DashScope-Async': 'enable'},
        )
        task_id = ((response.data or {}).get('output') or {}).get('task_id')
        if not task_id:
            raise TransientError('No task ID returned from DashScope')
        return task_id

    async def poll_task(self, task_id: str) -> RemoteTaskResult:
        response = await self.client.get(f'/tasks/{task_id}')
        output = (response.data or {}).get('output') or {}
        status = REMOTE_STATUS.get(output.get('task_status', 'UNKNOWN'), 'failed')
        results = output.get('results') or []
        return RemoteTaskResult(
            status=status,
            result_url=results[0].get('url') if results else None,
            error=output.get('message'),
        )

    async def download(self, url: str) -> bytes:
        return await self.client.download(url)
