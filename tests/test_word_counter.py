"""
Tests for word_counter: counting, scene parsing and annotation correction.
"""

import unittest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from word_counter import (
    correct_voiceover_annotation,
    count_words,
    extract_voiceover_content,
    parse_scenes,
    scene_number,
)


class TestCountWords(unittest.TestCase):

    def test_vietnamese_syllables(self):
        self.assertEqual(count_words("Mẹ kế không phải ác quỷ"), 6)
        self.assertEqual(count_words("bà ta là nhà quản lý nguồn lực"), 8)

    def test_punctuation_is_not_a_word(self):
        self.assertEqual(count_words("Xin chào, thế giới!"), 4)
        self.assertEqual(count_words("The case - reopened."), 3)

    def test_empty(self):
        self.assertEqual(count_words(""), 0)
        self.assertEqual(count_words("   \n "), 0)
        self.assertEqual(count_words(None), 0)


class TestParseScenes(unittest.TestCase):

    def test_splits_and_drops_preamble(self):
        response = "Here is the outline:\n\nScene 1: Start\nText\n\nScene 2: Middle\nMore"
        scenes = parse_scenes(response)
        self.assertEqual(len(scenes), 2)
        self.assertTrue(scenes[0].startswith("Scene 1:"))
        self.assertEqual(scene_number(scenes[1]), 2)

    def test_vietnamese_heading(self):
        scenes = parse_scenes("Cảnh 7: Mở đầu\nLời dẫn: abc")
        self.assertEqual([scene_number(s) for s in scenes], [7])

    def test_no_scenes(self):
        self.assertEqual(parse_scenes("no headings here"), [])
        self.assertIsNone(scene_number("Intro"))


class TestVoiceoverAnnotation(unittest.TestCase):

    def test_extract_strips_annotation(self):
        scene = "Cảnh 1: Mở đầu\nHình ảnh: Một con phố\nLời dẫn: Thành phố chìm trong sương mù (99 từ)"
        self.assertEqual(extract_voiceover_content(scene), "Thành phố chìm trong sương mù")

    def test_correct_rewrites_count_vietnamese(self):
        scene = "Cảnh 1: Mở đầu\nLời dẫn: Thành phố chìm trong sương mù (99 từ)"
        corrected, count, content = correct_voiceover_annotation(scene, "vi")
        self.assertEqual(count, 6)
        self.assertEqual(content, "Thành phố chìm trong sương mù")
        self.assertTrue(corrected.endswith("Lời dẫn: Thành phố chìm trong sương mù (6 từ)"))
        self.assertTrue(corrected.startswith("Cảnh 1: Mở đầu\n"))

    def test_correct_english_bold_label(self):
        scene = "Scene 3: Arrest\n**Voice-over:** Police arrived at dawn. (12 words)\n\nImage: a door"
        corrected, count, _ = correct_voiceover_annotation(scene, "en")
        self.assertEqual(count, 4)
        self.assertIn("Voice-over: Police arrived at dawn. (4 words)", corrected)
        self.assertTrue(corrected.endswith("\n\nImage: a door"))

    def test_missing_voiceover(self):
        scene = "Scene 2: Silent\nImage: empty room"
        corrected, count, content = correct_voiceover_annotation(scene, "en")
        self.assertEqual(corrected, scene)
        self.assertEqual(count, 0)
        self.assertIsNone(content)
        self.assertIsNone(extract_voiceover_content(scene, "en"))


if __name__ == "__main__":
    unittest.main()
