from google import genai

from config import settings
from logger import get_logger
from prompt_utils import MAX_CATEGORY_LENGTH, MAX_TITLE_LENGTH

logger = get_logger(__name__)

TITLE_INSTRUCTION = """
Create a short, descriptive title (3 to 8 words) for the following reusable text prompt.
Placeholders look like {{{{name}}}} and must not appear in the title.
Output ONLY the title text, nothing else. No quotes, no markdown, no explanation.
Prompt: {prompt}
"""

CATEGORY_INSTRUCTION = """
Pick one short category (1 to 3 words, e.g. Sales, Support, Code Review) for the following reusable text prompt.
Output ONLY the category, nothing else. No quotes, no markdown, no explanation.
Prompt: {prompt}
"""


def _generate(instruction: str) -> str:
    # genai.Client() reads GEMINI_API_KEY / GOOGLE_API_KEY from the environment
    client = genai.Client()
    response = client.models.generate_content(
        model=settings.GEMINI_MODEL,
        contents=instruction
    )
    return (response.text or "").strip().replace('\n', ' ').replace('"', '')


def suggest_title(prompt: str) -> str:
    if not prompt.strip():
        return ""
    title = _generate(TITLE_INSTRUCTION.format(prompt=prompt))
    logger.info(f"Suggested title: {title}")
    return title[:MAX_TITLE_LENGTH]


def suggest_category(prompt: str) -> str:
    if not prompt.strip():
        return ""
    return _generate(CATEGORY_INSTRUCTION.format(prompt=prompt))[:MAX_CATEGORY_LENGTH]
