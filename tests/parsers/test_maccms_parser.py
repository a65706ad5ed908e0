import json
import unittest

from collector.config import CollectorConfig
from collector.parsers import (
    NormalizationError,
    normalize_region,
    parse_play_blob,
    play_index_from_payload,
    play_index_to_payload,
)
from collector.parsers.maccms import MacCmsJsonNormalizer


class MacCmsJsonNormalizerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.normalizer = MacCmsJsonNormalizer(
            1,
            "alpha",
            category_resolver=CollectorConfig().canonical_category,
        )

    def test_normalize_page_with_vod_fields(self) -> None:
        payload = {
            "code": 1,
            "page": "1",
            "pagecount": 2,
            "list": [
                {
                    "vod_id": 11,
                    "vod_name": "示例电影",
                    "type_id": 6,
                    "type_name": "动作片",
                    "vod_year": "2023",
                    "vod_area": "大陆",
                    "vod_actor": "张三,李四",
                    "vod_director": "王导",
                    "vod_content": "<p>一部 示例 电影</p>",
                    "vod_score": "8.5",
                    "vod_remarks": "HD",
                    "vod_pic": "http://img.example.com/a.jpg",
                    "vod_play_from": "m3u8$$$mp4",
                    "vod_play_url": (
                        "第1集$http://v.example.com/1.m3u8#第2集$https://v.example.com/2.m3u8"
                        "$$$正片$https://v.example.com/full.mp4"
                    ),
                },
                {"vod_id": 12},
            ],
        }

        page = self.normalizer.normalize_page(json.dumps(payload, ensure_ascii=False))

        self.assertEqual(page.page, 1)
        self.assertEqual(page.page_count, 2)
        self.assertEqual(len(page.records), 1)
        record = page.records[0]
        self.assertEqual(record.source_item_id, "11")
        self.assertEqual(record.raw_title, "示例电影")
        self.assertEqual(record.category, "movie")
        self.assertEqual(record.source_category_id, "6")
        self.assertEqual(record.year, "2023")
        self.assertEqual(record.region, "中国大陆")
        self.assertEqual(record.cast, "张三,李四")
        self.assertEqual(record.synopsis, "一部 示例 电影")
        self.assertEqual(record.rating, "8.5")
        self.assertEqual(record.cover_url, "https://img.example.com/a.jpg")
        self.assertEqual(list(record.play_index), ["alpha-m3u8", "alpha-mp4"])
        self.assertEqual(record.play_index["alpha-m3u8"][0].url, "https://v.example.com/1.m3u8")
        self.assertEqual(record.episode_count(), 3)

    def test_short_field_synonyms(self) -> None:
        payload = {
            "list": [
                {
                    "id": "5",
                    "name": "短名",
                    "note": "更新至3集",
                    "des": "描述",
                    "actor": "王五",
                    "score": "0",
                    "type": "电视剧",
                    "tid": "2",
                }
            ]
        }

        record = self.normalizer.normalize_page(json.dumps(payload, ensure_ascii=False)).records[0]

        self.assertEqual(record.raw_title, "短名")
        self.assertEqual(record.remark, "更新至3集")
        self.assertEqual(record.synopsis, "描述")
        self.assertEqual(record.cast, "王五")
        self.assertEqual(record.rating, "")
        self.assertEqual(record.category, "tv")
        self.assertEqual(record.source_category_id, "2")
        self.assertEqual(record.play_index, {})

    def test_bare_list_payload(self) -> None:
        body = json.dumps([{"vod_id": 1, "vod_name": "A"}, "junk"])

        page = self.normalizer.normalize_page(body)

        self.assertEqual((page.page, page.page_count), (1, 1))
        self.assertEqual([record.raw_title for record in page.records], ["A"])

    def test_invalid_json_raises(self) -> None:
        with self.assertRaises(NormalizationError):
            self.normalizer.normalize_page("<html>blocked</html>")


class PlayBlobTestCase(unittest.TestCase):
    def test_unnamed_episodes_are_numbered(self) -> None:
        index = parse_play_blob("", "http://a.example.com/1.m3u8#https://a.example.com/2.m3u8", "alpha")

        self.assertEqual(list(index), ["alpha"])
        self.assertEqual([episode.name for episode in index["alpha"]], ["第1集", "第2集"])
        self.assertEqual(index["alpha"][0].url, "https://a.example.com/1.m3u8")

    def test_malformed_segments_are_dropped(self) -> None:
        blob = "第1集$ftp://x#$#第3集$https://ok.example.com/3.m3u8#  "

        index = parse_play_blob("m3u8", blob, "alpha")

        self.assertEqual(len(index["alpha-m3u8"]), 1)
        self.assertEqual(index["alpha-m3u8"][0].name, "第3集")

    def test_empty_groups_are_dropped(self) -> None:
        index = parse_play_blob("a$$$b", "$$$第1集$https://b.example.com/1.m3u8", "alpha")

        self.assertEqual(list(index), ["alpha-b"])

    def test_unnamed_groups_use_position(self) -> None:
        index = parse_play_blob(
            "",
            "https://a.example.com/1.m3u8$$$https://a.example.com/2.m3u8",
            "alpha",
        )

        self.assertEqual(list(index), ["alpha-1", "alpha-2"])

    def test_empty_blob(self) -> None:
        self.assertEqual(parse_play_blob("m3u8", "", "alpha"), {})

    def test_payload_reader_skips_malformed_items(self) -> None:
        payload = {
            "alpha-m3u8": [{"name": "第1集", "url": "https://v.example.com/1.m3u8"}, {"name": "bad"}],
            "alpha-broken": "not a list",
            "alpha-empty": [{"name": "x", "url": "ftp://nope"}],
        }

        index = play_index_from_payload(payload)

        self.assertEqual(list(index), ["alpha-m3u8"])
        self.assertEqual(
            play_index_to_payload(index),
            {"alpha-m3u8": [{"name": "第1集", "url": "https://v.example.com/1.m3u8"}]},
        )


class RegionNormalizationTestCase(unittest.TestCase):
    def test_aliases_collapse_to_one_name(self) -> None:
        for alias in ("大陆", "内地", "中国", " 国产 "):
            with self.subTest(alias=alias):
                self.assertEqual(normalize_region(alias), "中国大陆")
        self.assertEqual(normalize_region("南韩"), "韩国")

    def test_composite_regions_are_split_and_deduplicated(self) -> None:
        self.assertEqual(normalize_region("大陆，香港,内地"), "中国大陆,中国香港")
        self.assertEqual(normalize_region("美国/英"), "美国,英国")

    def test_unknown_and_empty_regions(self) -> None:
        self.assertEqual(normalize_region("欧美"), "欧美")
        self.assertEqual(normalize_region(""), "")


if __name__ == "__main__":
    unittest.main()
