from .local_models import LocalChatModel
from .api_models import GeminiChatModel
from .base import ChatModelInterface
