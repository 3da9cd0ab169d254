"""Announcer lines for scripted program segments and ad-hoc handoffs."""
from enum import IntEnum
from typing import Optional

CURIOSITIES = [
    "Você sabia? A primeira transmissão de rádio com voz aconteceu em 1906, na noite de Natal.",
    "Curiosidade: o formato de rádio por streaming surgiu no começo dos anos noventa.",
    "Você sabia? O vinil voltou a vender mais do que CDs em vários países.",
]

AD_HOC_LINES = [
    "Você está ouvindo {station}. Agora, {title}.",
    "Seguimos com {title}, aqui na {station}.",
    "Na sequência, {title}. Fique com a gente.",
]


class ProgramStep(IntEnum):
    """Scripted segments, in broadcast order; DEFAULT means no script left."""
    OPENING = 0
    TRANSITION = 1
    CURIOSITY = 2
    CLOSING = 3
    DEFAULT = 4


def scripted_line(step: ProgramStep, title: str, station: str, host: str, play_count: int = 0) -> str:
    """
    Announcer text for a scripted segment.
    
    Args:
        step: Segment to narrate (not DEFAULT)
        title: Title of the track being introduced
        station: Station name
        host: Announcer name
        play_count: Selects among curiosities
    """
    if step == ProgramStep.OPENING:
        return f"Olá! Começa agora a programação da {station}, com {host}. Para abrir, {title}."
    if step == ProgramStep.TRANSITION:
        return f"Ficamos por aqui com a faixa anterior. Agora, {title}."
    if step == ProgramStep.CURIOSITY:
        curiosity = CURIOSITIES[play_count % len(CURIOSITIES)]
        return f"{curiosity} E agora, {title}."
    if step == ProgramStep.CLOSING:
        return f"Encerramos este bloco da {station}. A programação continua com {title}."
    raise ValueError(f"No script for step {step!r}")


def ad_hoc_line(title: str, station: str, play_count: int) -> Optional[str]:
    """
    Handoff text outside the script: narrated on even plays, silent on odd ones.
    
    Returns:
        Line to speak, or None for a silent handoff
    """
    if play_count % 2:
        return None
    template = AD_HOC_LINES[(play_count // 2) % len(AD_HOC_LINES)]
    return template.format(title=title, station=station)


def coming_up_line(title: str) -> str:
    return f"Daqui a pouco, {title}. Não saia daí."
