import unittest
import json
import sys
import os
import tempfile

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from corsproxy.config import ProxyConfig


class TestProxyConfig(unittest.TestCase):
    """Test cases for ProxyConfig."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def _write(self, content: str) -> str:
        path = os.path.join(self.tmpdir.name, 'config.json')
        with open(path, 'w') as f:
            f.write(content)
        return path

    def test_defaults(self):
        """Test default configuration settings."""
        config = ProxyConfig()

        self.assertEqual(config.get("host"), "0.0.0.0")
        self.assertEqual(config.get("port"), 5552)
        self.assertEqual(config.get("read_header_timeout"), 5)
        self.assertEqual(config.get("shutdown_grace_period"), 10)
        self.assertIsNone(config.get("upstream_timeout"))

    def test_file_overrides_defaults(self):
        """Test values from the JSON file replace the defaults."""
        # Arrange
        path = self._write(json.dumps({"port": 9000, "upstream_timeout": 30}))

        # Act
        config = ProxyConfig(path)

        # Assert
        self.assertEqual(config.get("port"), 9000)
        self.assertEqual(config.get("upstream_timeout"), 30)
        self.assertEqual(config.get("host"), "0.0.0.0")

    def test_invalid_file(self):
        """Test unparseable configuration files are reported."""
        for content in ('{not json', '[1, 2]'):
            with self.subTest(content=content):
                with self.assertRaises(ValueError):
                    ProxyConfig(self._write(content))

    def test_missing_file(self):
        with self.assertRaises(ValueError):
            ProxyConfig(os.path.join(self.tmpdir.name, 'missing.json'))

    def test_set(self):
        config = ProxyConfig()
        config.set("port", 8080)
        self.assertEqual(config.get("port"), 8080)


if __name__ == '__main__':
    unittest.main()
