"""Thin async wrapper around the yt-dlp command line."""
import asyncio
from typing import List, Optional
from studio.core.config import Settings, settings
from studio.core.errors import ResolutionFailure
from studio.core.logging import logger


class YtDlpRunner:
    """Runs yt-dlp and returns its standard output."""
    
    def __init__(self, config: Optional[Settings] = None, timeout_seconds: float = 60.0):
        self.config = config or settings
        self.timeout_seconds = timeout_seconds
    
    async def run(self, args: List[str]) -> str:
        """
        Run yt-dlp with the given arguments.
        
        Args:
            args: Arguments, without the binary path
            
        Returns:
            Decoded standard output
            
        Raises:
            ResolutionFailure: On spawn failure, timeout or non-zero exit
        """
        command = [self.config.ytdlp_path, *args]
        logger.info(f"Running resolver: {' '.join(command)}")
        
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to start yt-dlp: {e}")
            raise ResolutionFailure(f"Falha ao executar yt-dlp: {e}")
        
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"yt-dlp timed out after {self.timeout_seconds}s")
            raise ResolutionFailure("Tempo esgotado ao consultar o YouTube.")
        
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip().splitlines()
            message = detail[-1] if detail else f"código {process.returncode}"
            logger.error(f"yt-dlp failed ({process.returncode}): {message}")
            raise ResolutionFailure(f"Falha ao consultar o YouTube: {message}")
        
        return stdout.decode("utf-8", errors="replace")
