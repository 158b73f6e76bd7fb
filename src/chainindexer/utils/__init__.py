"""HTTP fetching with retry, backoff and circuit breaking.

The utils layer sits in the middle of the diamond DAG, depending only on
[chainindexer.models][chainindexer.models]. It provides the upstream
client primitive used by [chainindexer.services][chainindexer.services].

Attributes:
    http: Bounded body reading and
        [fetch_with_retry()][chainindexer.utils.http.fetch_with_retry], which
        resolves every logical GET to a
        [FetchOutcome][chainindexer.models.fetch.FetchOutcome].

Note:
    The utils layer has **zero** imports from ``chainindexer.core`` or
    ``chainindexer.services``. Rate limiters are accepted structurally.

Examples:
    ```python
    from chainindexer.utils.http import RequestOptions, fetch_with_retry
    ```
"""
