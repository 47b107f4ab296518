"""Tests for CID extraction from event content."""

import pytest

from filedrop.discovery.extractor import MIN_CID_LENGTH, clean_cid, extract_cids
from tests.fixtures.pipeline import CID_A, CID_B, CID_V1

SCENARIO_CID = "QmT78zSuBmuS4z925WZfrqQ1qHaJ56DQaTfyMUF7F8ff91"


class TestExtractCids:
    """Extraction from free-form text."""

    def test_should_extract_single_cid_from_ipfs_uri(self) -> None:
        text = f"grab this ipfs://{SCENARIO_CID} now"

        assert extract_cids(text) == [SCENARIO_CID]

    def test_should_extract_gateway_urls(self) -> None:
        text = (
            f"see https://dweb.link/ipfs/{CID_A}/readme.md and "
            f"https://ipfs.io/ipfs/{CID_B}?filename=cat.png"
        )

        assert extract_cids(text) == [CID_A, CID_B]

    def test_should_extract_subdomain_gateway_path(self) -> None:
        text = f"https://cf.dweb.link/ipfs/{CID_A}"

        assert extract_cids(text) == [CID_A]

    def test_should_extract_bare_v0_and_v1(self) -> None:
        text = f"two objects: {CID_A}, and {CID_V1}."

        assert extract_cids(text) == [CID_A, CID_V1]

    def test_should_deduplicate_in_first_seen_order(self) -> None:
        text = f"{CID_B} {CID_A} ipfs://{CID_B} {CID_A}"

        result = extract_cids(text)

        assert sorted(result) == sorted([CID_A, CID_B])
        assert len(result) == 2

    def test_should_be_idempotent(self) -> None:
        text = f"ipfs://{CID_A} then {CID_V1} then https://ipfs.io/ipfs/{CID_B}"

        first = extract_cids(text)
        second = extract_cids(" ".join(first))

        assert sorted(first) == sorted(second)

    @pytest.mark.parametrize(
        "text",
        [
            None,
            "",
            42,
            {"content": CID_A},
            "Qm123 too short",
            "ipfs://QmShortHash",
            "just words and https://example.com/ipfs/",
        ],
    )
    def test_should_return_empty_for_noise(self, text: object) -> None:
        assert extract_cids(text) == []

    def test_should_never_return_short_strings(self) -> None:
        text = "ipfs://Qmabc ipfs://bafy https://dweb.link/ipfs/Qm-" + "x" * 10

        assert all(len(cid) >= MIN_CID_LENGTH for cid in extract_cids(text))


class TestCleanCid:
    """Canonicalisation of raw matches."""

    def test_should_keep_first_path_segment(self) -> None:
        assert clean_cid(f"{CID_A}/images/1.png") == CID_A

    def test_should_drop_query_and_fragment(self) -> None:
        assert clean_cid(f"{CID_A}?filename=a.txt#top") == CID_A

    def test_should_strip_trailing_punctuation(self) -> None:
        assert clean_cid(f"{CID_A}.") == CID_A

    def test_should_reject_out_of_range_lengths(self) -> None:
        assert clean_cid("Qm" + "a" * 20) is None
        assert clean_cid("b" + "a" * 200) is None
        assert clean_cid(None) is None
