import math
import threading

from rag_context.retrieval.lexical_index import LexicalIndex, tokenize
from rag_context.types import ChunkMetadata, IndexedChunk


def _chunk(chunk_id: str, content: str, *, document_id: str | None = None, owner_id: str = "owner-1",
           topic_id: str | None = None) -> IndexedChunk:
    return IndexedChunk(
        chunk_id=chunk_id,
        document_id=document_id or f"doc-{chunk_id}",
        content=content,
        owner_id=owner_id,
        topic_id=topic_id,
        chunk_index=0,
        metadata=ChunkMetadata(document_name=f"{chunk_id}.txt"),
    )


def test_tokenize_lowercases_and_strips_punctuation() -> None:
    assert tokenize("The Cat, sat; on-the MAT!") == ["the", "cat", "sat", "on", "the", "mat"]
    assert tokenize("!!! ???") == []


def test_idf_is_floored_for_term_in_every_chunk() -> None:
    index = LexicalIndex()
    index.add_batch(
        [
            _chunk("c1", "alpha beta"),
            _chunk("c2", "alpha gamma"),
            _chunk("c3", "alpha delta epsilon"),
        ]
    )

    assert index.idf("alpha") == 0.1
    assert index.idf("beta") == math.log((3 - 1 + 0.5) / (1 + 0.5))
    assert index.idf("unseen") == 0.0


def test_average_length_tracks_adds_and_removals() -> None:
    index = LexicalIndex()
    index.add(_chunk("c1", "one two"))
    index.add(_chunk("c2", "one two three four"))

    assert index.stats().average_length == 3.0

    assert index.remove("c1") is True
    assert index.stats().average_length == 4.0

    assert index.remove("c2") is True
    stats = index.stats()
    assert stats.total_chunks == 0
    assert stats.average_length == 0.0
    assert stats.total_terms == 0


def test_chunks_without_terms_are_rejected() -> None:
    index = LexicalIndex()

    assert index.add(_chunk("empty", "  ... !!! ")) is False
    assert len(index) == 0
    assert index.add_batch([_chunk("ok", "content"), _chunk("bad", "?")]) == 1
    assert "ok" in index
    assert "bad" not in index


def test_readding_chunk_id_replaces_previous_entry() -> None:
    index = LexicalIndex()
    index.add(_chunk("c1", "cat"))
    index.add(_chunk("c1", "dog"))

    assert index.search("cat") == []
    assert [hit.chunk.chunk_id for hit in index.search("dog")] == ["c1"]
    assert index.stats().total_chunks == 1


def test_search_on_empty_index_or_query_returns_nothing() -> None:
    index = LexicalIndex()
    assert index.search("anything") == []

    index.add(_chunk("c1", "some text"))
    assert index.search("") == []
    assert index.search("   ,,, ") == []


def test_search_is_deterministic_and_ties_keep_insertion_order() -> None:
    index = LexicalIndex()
    index.add_batch(
        [
            _chunk("first", "shared phrase here"),
            _chunk("second", "shared phrase here"),
            _chunk("other", "unrelated words entirely"),
        ]
    )

    run_one = index.search("shared phrase")
    run_two = index.search("shared phrase")

    assert [hit.chunk.chunk_id for hit in run_one] == ["first", "second"]
    assert [(h.chunk.chunk_id, h.score) for h in run_one] == [(h.chunk.chunk_id, h.score) for h in run_two]
    assert run_one[0].score == run_one[1].score


def test_filters_apply_before_scoring() -> None:
    index = LexicalIndex()
    index.add_batch(
        [
            _chunk("a", "encryption policy", owner_id="alice", topic_id="security"),
            _chunk("b", "encryption standard", owner_id="bob", topic_id="security"),
            _chunk("c", "encryption keys", owner_id="alice", topic_id="ops", document_id="doc-x"),
        ]
    )

    assert [h.chunk.chunk_id for h in index.search("encryption", owner_id="alice")] == ["a", "c"]
    assert [h.chunk.chunk_id for h in index.search("encryption", topic_id="security")] == ["a", "b"]
    assert [h.chunk.chunk_id for h in index.search("encryption", document_ids=["doc-x"])] == ["c"]
    assert index.search("encryption", owner_id="carol") == []


def test_top_k_and_min_score_limit_results() -> None:
    index = LexicalIndex()
    index.add_batch([_chunk(f"c{i}", f"report number {i} quarterly" + " filler" * i) for i in range(6)])

    hits = index.search("quarterly report", top_k=3)
    assert len(hits) == 3
    assert hits == sorted(hits, key=lambda hit: hit.score, reverse=True)

    cutoff = hits[1].score
    assert all(hit.score >= cutoff for hit in index.search("quarterly report", min_score=cutoff))


def test_remove_by_document_drops_all_its_chunks() -> None:
    index = LexicalIndex()
    index.add_batch(
        [
            _chunk("p1", "part one", document_id="manual"),
            _chunk("p2", "part two", document_id="manual"),
            _chunk("x", "part three", document_id="other"),
        ]
    )

    assert index.remove_by_document("manual") == 2
    assert index.remove_by_document("manual") == 0
    assert [h.chunk.chunk_id for h in index.search("part")] == ["x"]
    assert index.remove("missing") is False


def test_clear_resets_index() -> None:
    index = LexicalIndex()
    index.add(_chunk("c1", "hello world"))
    index.clear()

    assert len(index) == 0
    assert index.stats().average_length == 0.0
    assert index.search("hello") == []


def test_cat_example_ranks_exact_term_first() -> None:
    index = LexicalIndex()
    index.add_batch(
        [
            _chunk("D1", "the cat sat on the mat"),
            _chunk("D2", "the dog played in the park"),
            _chunk("D3", "cats and dogs are common pets"),
        ]
    )

    hits = index.search("cat")
    assert [hit.chunk.chunk_id for hit in hits] == ["D1"]
    assert hits[0].score > 0

    # Tokens are matched exactly, so "cats" only scores when asked for.
    both = index.search("cat cats")
    assert [hit.chunk.chunk_id for hit in both] == ["D1", "D3"]
    assert all(hit.score > 0 for hit in both)


def test_readers_share_the_lock_and_writers_wait_for_them() -> None:
    index = LexicalIndex()
    index.add(_chunk("c1", "alpha beta"))
    reading = threading.Event()
    release = threading.Event()
    removed = threading.Event()

    def hold_read_lock() -> None:
        with index._lock.read():
            reading.set()
            release.wait(timeout=5)

    def remove_chunk() -> None:
        index.remove("c1")
        removed.set()

    reader = threading.Thread(target=hold_read_lock)
    reader.start()
    assert reading.wait(timeout=5)

    second_reader = threading.Thread(target=index.stats)
    second_reader.start()
    second_reader.join(timeout=5)
    assert not second_reader.is_alive()

    writer = threading.Thread(target=remove_chunk)
    writer.start()
    assert not removed.wait(timeout=0.2)
    assert "c1" in index

    release.set()
    assert removed.wait(timeout=5)
    reader.join(timeout=5)
    writer.join(timeout=5)
    assert "c1" not in index
