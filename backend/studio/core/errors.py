"""Error taxonomy shared by the mixer, Auto DJ, relay and resolver."""


class StudioError(Exception):
    """Base class for operator-facing studio errors."""

    default_message = "Erro inesperado no estúdio."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class UnsupportedPlatform(StudioError):
    """No audio runtime available; fatal to the mixer."""
    default_message = "Áudio não suportado neste ambiente."


class PlaybackBlocked(StudioError):
    """Playback was rejected; recoverable by the operator."""
    default_message = "Falha ao tocar a faixa."


class DeviceUnavailable(StudioError):
    """Microphone permission or hardware failure; retryable."""
    default_message = "Falha ao acessar o microfone."


class LibraryEmpty(StudioError):
    """Auto DJ has nothing to play."""
    default_message = "Adicione faixas ao player principal."


class InvalidReference(StudioError):
    """An external media reference could not be interpreted."""
    default_message = "URL do YouTube invalida."


class ResolutionFailure(StudioError):
    """The external resolver failed to produce a result."""
    default_message = "Falha ao resolver a URL do YouTube."


class EncoderStartFailure(StudioError):
    """Malformed or unreachable RTMP target, or encoder spawn failure."""
    default_message = "Falha ao iniciar o FFmpeg."


class EncoderRuntimeFailure(StudioError):
    """The encoder exited unexpectedly mid-stream."""
    default_message = "FFmpeg encerrou inesperadamente."


class UpstreamProxyFailure(StudioError):
    """The resolved direct URL could not be fetched."""
    default_message = "Falha ao buscar o áudio de origem."
