from fastapi import Request

from localizer.services.pipeline import LocalizationPipeline


def get_pipeline(request: Request) -> LocalizationPipeline:
    return request.app.state.pipeline
