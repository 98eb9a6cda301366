import threading

from sqlalchemy import func, select

from knowledge.indexer import Indexer
from storage import IndexEntry, Lemma


def _lemma_state(storage, site_id):
    return {row.lemma: row.frequency for row in storage.list_lemmas(site_id)}


def _entry_state(storage, page_id):
    return {entry.lemma_id: entry.count for entry in storage.list_index_by_page(page_id)}


def _assert_frequency_matches_entries(storage, site_id):
    with storage.transaction() as session:
        totals = dict(
            session.execute(
                select(IndexEntry.lemma_id, func.sum(IndexEntry.count)).group_by(IndexEntry.lemma_id)
            ).all()
        )
    for row in storage.list_lemmas(site_id):
        assert row.frequency == totals.get(row.id, 0)


def test_apply_index_creates_lemmas_and_entries(storage, site, word_lemmatizer):
    indexer = Indexer(storage, word_lemmatizer, workers=1)
    page = storage.save_page(site.id, "/", 200, "<p>кот кот дом</p>")

    counts = indexer.apply_index(page.content, page)

    assert counts == {"кот": 2, "дом": 1}
    assert _lemma_state(storage, site.id) == {"кот": 2, "дом": 1}
    assert sorted(_entry_state(storage, page.id).values()) == [1, 2]


def test_second_page_increments_existing_lemma(storage, site, word_lemmatizer):
    indexer = Indexer(storage, word_lemmatizer)
    first = storage.save_page(site.id, "/a", 200, "<p>кот дом</p>")
    second = storage.save_page(site.id, "/b", 200, "<p>кот кот</p>")

    indexer.apply_index(first.content, first)
    indexer.apply_index(second.content, second)

    assert _lemma_state(storage, site.id) == {"кот": 3, "дом": 1}
    assert storage.count_lemmas(site.id) == 2
    _assert_frequency_matches_entries(storage, site.id)


def test_retract_returns_lemmas_to_previous_state(storage, site, word_lemmatizer):
    indexer = Indexer(storage, word_lemmatizer)
    base = storage.save_page(site.id, "/", 200, "<p>кот дом</p>")
    extra = storage.save_page(site.id, "/extra", 200, "<p>кот кот сад</p>")
    indexer.apply_index(base.content, base)
    before = _lemma_state(storage, site.id)

    indexer.apply_index(extra.content, extra)
    removed = indexer.retract_index(extra)

    assert removed == 2
    assert storage.list_index_by_page(extra.id) == []
    after = _lemma_state(storage, site.id)
    assert after["кот"] == before["кот"]
    assert after["дом"] == before["дом"]
    assert after["сад"] == 0


def test_refresh_with_same_content_is_idempotent(storage, site, word_lemmatizer):
    indexer = Indexer(storage, word_lemmatizer)
    page = storage.save_page(site.id, "/", 200, "<p>кот кот дом сад</p>")
    indexer.apply_index(page.content, page)
    lemmas_before = _lemma_state(storage, site.id)
    entries_before = _entry_state(storage, page.id)

    indexer.refresh_index(page.content, page)

    assert _lemma_state(storage, site.id) == lemmas_before
    assert _entry_state(storage, page.id) == entries_before


def test_refresh_with_new_content_moves_counts(storage, site, word_lemmatizer):
    indexer = Indexer(storage, word_lemmatizer)
    page = storage.save_page(site.id, "/", 200, "<p>кот дом</p>")
    indexer.apply_index(page.content, page)

    indexer.refresh_index("<p>дом дом лес</p>", page)

    assert _lemma_state(storage, site.id) == {"кот": 0, "дом": 2, "лес": 1}
    _assert_frequency_matches_entries(storage, site.id)


def test_concurrent_upserts_of_new_lemma_do_not_lose_updates(storage, site, word_lemmatizer):
    indexer = Indexer(storage, word_lemmatizer)
    pages = [storage.save_page(site.id, f"/{n}", 200, "") for n in range(2)]
    barrier = threading.Barrier(len(pages))
    errors = []

    def upsert(page, count):
        barrier.wait()
        try:
            indexer.upsert_lemma("леопард", count, page)
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [
        threading.Thread(target=upsert, args=(page, count))
        for page, count in zip(pages, (2, 3))
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with storage.transaction() as session:
        rows = list(session.scalars(select(Lemma).where(Lemma.lemma == "леопард")))
    assert len(rows) == 1
    assert rows[0].frequency == 5
    _assert_frequency_matches_entries(storage, site.id)


def test_insert_conflict_retries_against_existing_row(storage, site, word_lemmatizer, monkeypatch):
    indexer = Indexer(storage, word_lemmatizer)
    first, second = (storage.save_page(site.id, f"/{n}", 200, "") for n in range(2))
    indexer.upsert_lemma("x", 2, first)

    lookups = []
    find = storage.find_lemma_for_update

    def stale_first_lookup(session, lemma, site_id):
        lookups.append(lemma)
        if len(lookups) == 1:
            return None
        return find(session, lemma, site_id)

    monkeypatch.setattr(storage, "find_lemma_for_update", stale_first_lookup)

    lemma_id = indexer.upsert_lemma("x", 3, second)

    assert len(lookups) >= 2
    with storage.transaction(write=False) as session:
        rows = list(session.scalars(select(Lemma).where(Lemma.lemma == "x")))
    assert [row.frequency for row in rows] == [5]
    assert rows[0].id == lemma_id
    assert _entry_state(storage, second.id) == {lemma_id: 3}
    _assert_frequency_matches_entries(storage, site.id)


def test_parallel_fan_out_indexes_every_lemma(storage, site, word_lemmatizer):
    indexer = Indexer(storage, word_lemmatizer, workers=4)
    words = " ".join(f"слово{chr(ord('а') + n)}" for n in range(20))
    page = storage.save_page(site.id, "/", 200, f"<p>{words} {words}</p>")

    indexer.apply_index(page.content, page)

    state = _lemma_state(storage, site.id)
    assert len(state) == 20
    assert set(state.values()) == {2}
    assert len(storage.list_index_by_page(page.id)) == 20
