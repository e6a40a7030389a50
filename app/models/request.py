from typing import Literal

from pydantic import BaseModel, HttpUrl


class CreateProjectRequest(BaseModel):
    site_url: HttpUrl
    page_type: Literal["single", "multipage"] = "multipage"
    """How much of the site to crawl.

    ``"single"``
        Only the submitted URL.

    ``"multipage"`` (default)
        Follow internal links up to the scraping service's page limit.
    """


class CheckLinkRequest(BaseModel):
    # Plain str: malformed URLs must reach the handler so it can answer 400
    # with ``isBroken: true`` instead of a validation error.
    url: str = ""
