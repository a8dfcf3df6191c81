import re
from typing import Callable, Optional

from aiocache import cached
from rapidfuzz import distance, process
from unidecode import unidecode

from shapebase.dimensions import Space
from shapebase.logger import logger
from shapebase.models import ContentItem
from shapebase.utils import store_cache_key, timed


def canonical_title(string: str) -> str:
    string = unidecode(string).lower()
    return " ".join(re.sub(r"[^a-z0-9]+", " ", string).split())


def build_searcher(contents: list[ContentItem]) -> Callable[..., list[ContentItem]]:
    ids_2_content = {content.content_id: content for content in contents}
    ids_2_clean_titles = {
        content.content_id: canonical_title(content.title) for content in contents
    }

    @timed
    def search(
        query: str, limit: int = 10, content_type: Optional[str] = None
    ) -> list[ContentItem]:
        query = canonical_title(query)
        if len(query) == 0:
            raise ValueError("search query is empty")

        choices = ids_2_clean_titles
        if content_type is not None:
            choices = {
                idx: title
                for idx, title in ids_2_clean_titles.items()
                if ids_2_content[idx].content_type == content_type
            }
        # https://maxbachmann.github.io/RapidFuzz/Usage/distance/JaroWinkler.html
        top_matches = process.extract(
            query,
            choices,
            limit=limit,
            scorer=distance.JaroWinkler.normalized_distance,
        )
        logger.debug(top_matches)
        return [ids_2_content[content_id] for _, _, content_id in top_matches]

    return search


def _searcher_key(func, store, space):
    return store_cache_key(store, func.__name__, Space(space).value)


@cached(ttl=600, key_builder=_searcher_key)
@timed
async def get_searcher(store, space: Space):
    contents = await store.list_content(space)
    return build_searcher(contents)
