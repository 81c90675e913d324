"""Error taxonomy shared by the GitHub and LLM halves of the pipeline."""


class PipelineError(Exception):
    """Base for every failure the pipeline raises on purpose."""


class NotFound(PipelineError):
    """Account, repository listing or file does not exist."""


class NetworkError(PipelineError):
    """Transport failure: DNS, connect, timeout."""


class UpstreamStatusError(PipelineError):
    def __init__(self, status: int, body: str, ctx: str = "upstream call"):
        self.status = status
        self.body = body
        super().__init__(f"{ctx} returned {status}: {body[:300]}")


class FormatError(PipelineError):
    """Response is missing the field we expected to read."""


class ParseError(PipelineError):
    def __init__(self, msg: str, raw: str):
        self.raw = raw
        super().__init__(f"{msg}. Raw: {raw[:500]}")
