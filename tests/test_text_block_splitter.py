"""Tests for sentence splitting and block segmentation."""

from utils.text_block_splitter import (
    split_into_sentences,
    split_paragraph_into_sentences,
    split_into_blocks,
    create_extract_blocks,
    create_assign_blocks,
    count_tokens,
)


def _word_count(text):
    return len(text.split())


def test_splits_on_sentence_endings():
    assert split_paragraph_into_sentences("It was dark. Who's there? Run!") == [
        "It was dark.",
        "Who's there?",
        "Run!",
    ]


def test_does_not_split_inside_quotes():
    sentences = split_paragraph_into_sentences('"Stop. Think about it!" he said. Then he left.')
    assert sentences == ['"Stop. Think about it!" he said.', "Then he left."]


def test_does_not_split_inside_curly_quotes_and_guillemets():
    sentences = split_paragraph_into_sentences("“Wait. Please.” She turned. «Non. Jamais.» He sighed.")
    assert sentences == ["“Wait. Please.” She turned.", "«Non. Jamais.» He sighed."]


def test_keeps_abbreviations_together():
    sentences = split_paragraph_into_sentences("Mr. Smith met Dr. Jones. They talked.")
    assert sentences == ["Mr. Smith met Dr. Jones.", "They talked."]


def test_ellipsis_ends_sentence_before_space():
    assert split_paragraph_into_sentences("Well... I suppose so.") == ["Well...", "I suppose so."]


def test_paragraphs_and_line_breaks():
    text = "First line\ncontinues here. Second.\n\n\nNew paragraph"
    assert split_into_sentences(text) == ["First line continues here.", "Second.", "New paragraph"]


def test_drops_unpronounceable_fragments():
    assert split_into_sentences("Hello.\n\n* * *\n\nGoodbye.") == ["Hello.", "Goodbye."]


def test_blocks_respect_budget_and_are_gap_free():
    sentences = [f"Sentence number {i} is here." for i in range(10)]  # 5 words each
    blocks = split_into_blocks(sentences, max_tokens=12, token_counter=_word_count)

    assert [len(b.sentences) for b in blocks] == [2, 2, 2, 2, 2]
    expected_start = 0
    for block in blocks:
        assert block.sentence_start_index == expected_start
        assert sum(_word_count(s) for s in block.sentences) <= 12
        expected_start += len(block.sentences)
    assert expected_start == len(sentences)


def test_oversized_sentence_kept_whole_in_own_block():
    sentences = ["Short one.", "This sentence is far too long for the tiny budget.", "Another short."]
    blocks = split_into_blocks(sentences, max_tokens=4, token_counter=_word_count)

    assert [b.sentences for b in blocks] == [
        ["Short one."],
        ["This sentence is far too long for the tiny budget."],
        ["Another short."],
    ]
    assert [b.sentence_start_index for b in blocks] == [0, 1, 2]


def test_global_indices_are_monotonic_across_blocks():
    text = " ".join(f"Line {i}." for i in range(25))
    blocks = create_assign_blocks(text, max_tokens=3, token_counter=_word_count)
    indices = [b.sentence_start_index + i for b in blocks for i in range(len(b.sentences))]
    assert indices == list(range(25))


def test_extract_blocks_are_coarser_than_assign_blocks():
    text = " ".join(f"Line {i} goes here." for i in range(40))
    extract_blocks = create_extract_blocks(text, max_tokens=40, token_counter=_word_count)
    assign_blocks = create_assign_blocks(text, max_tokens=10, token_counter=_word_count)
    assert len(extract_blocks) < len(assign_blocks)


def test_empty_text_gives_no_blocks():
    assert create_assign_blocks("   \n\n  ", token_counter=_word_count) == []


def test_count_tokens_is_positive_for_text():
    assert count_tokens("Hello there, general.") > 0


def test_new_quotation_after_finished_one_starts_a_sentence():
    assert split_paragraph_into_sentences("\"Hello!\" \"Hi,\" Mary replied.") == [
        "\"Hello!\"",
        "\"Hi,\" Mary replied.",
    ]
    assert split_paragraph_into_sentences("“Run.” “Where?” he asked.") == ["“Run.”", "“Where?” he asked."]
    assert split_paragraph_into_sentences("\"Wait,\" \"please\" she begged.") == ["\"Wait,\" \"please\" she begged."]
