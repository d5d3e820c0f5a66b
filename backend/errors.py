"""
Pipeline exception hierarchy

Provider errors are recoverable and never leave the adapter that raised them.
Stage errors end the job. Title card errors degrade the output but not the job.
"""


class PipelineError(Exception):
    """Base class for every error raised by the video pipeline"""


class ProviderError(PipelineError):
    """A single TTS / stock-footage / sound provider failed"""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class StageError(PipelineError):
    """A whole pipeline stage failed - fatal to the job"""

    stage = "unknown"


class VoiceSynthesisError(StageError):
    stage = "synthesizing_voice"


class MediaResolutionError(StageError):
    stage = "resolving_media"


class CompositionError(StageError):
    stage = "composing"


class TitleCardError(PipelineError):
    """Title card could not be rendered (composition continues without it)"""


class ContentNotFoundError(PipelineError):
    """No content record exists for the requested id"""

    def __init__(self, content_id):
        super().__init__(f"Content not found: {content_id}")
        self.content_id = content_id


class FFmpegError(PipelineError):
    """An ffmpeg invocation exited non-zero or timed out"""

    def __init__(self, message: str, stderr: str = ''):
        super().__init__(message)
        self.stderr = stderr
