"""Announcer speech: text in, playable URL out."""
from typing import Optional
from urllib.parse import quote
from studio.core.config import settings
from studio.core.errors import StudioError


class SpeechSynthesizer:
    """Interface to the external text-to-speech service."""
    
    async def synthesize(self, text: str) -> str:
        """
        Produce a playable audio URL speaking `text`.
        
        Args:
            text: Line to speak
            
        Returns:
            URL playable by a media element
        """
        raise NotImplementedError


class TemplateSpeechSynthesizer(SpeechSynthesizer):
    """TTS services that render speech from a GET URL, e.g. http://tts/api/tts?text={text}."""
    
    def __init__(self, url_template: Optional[str] = None):
        self.url_template = url_template if url_template is not None else settings.tts_url_template
    
    async def synthesize(self, text: str) -> str:
        if not self.url_template:
            raise StudioError("Síntese de voz não configurada.")
        return self.url_template.format(text=quote(text, safe=""))
