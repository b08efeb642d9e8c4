from typing import Sequence

from skywrite.models.content import EPOCH, FeedEntry, PageMetadata, PostEmbed, PostPayload


DEFAULT_TITLE = "New post"


def assemble_post(
    entry: FeedEntry,
    link: str,
    metadata: PageMetadata,
    languages: Sequence[str],
) -> PostPayload:
    """Combine an entry and its resolved metadata into a post. No I/O."""
    return PostPayload(
        text=f"{entry.title or DEFAULT_TITLE} - {link}",
        # Keep the original publish time; never substitute wall-clock time
        created_at=entry.published or EPOCH,
        languages=list(languages),
        embed=PostEmbed(
            title=metadata.title,
            description=metadata.description,
            uri=link,
            thumbnail_url=metadata.thumbnail_url,
        ),
    )
