"""
Unit tests for the configuration module.
Tests configuration loading, validation, and environment variable support.
"""
import unittest
import os
import tempfile
import json
from queuebit.config import Config, get_config
import queuebit.config


class MockEnvironment:
    """Replace os.getenv with a lookup in a private dictionary"""

    def __init__(self):
        self.original_getenv = os.getenv
        self.mock_vars = {}

    def set(self, key, value):
        self.mock_vars[key] = value

    def mock_getenv(self, key, default=None):
        return self.mock_vars.get(key, default)

    def start_mocking(self):
        os.getenv = self.mock_getenv

    def stop_mocking(self):
        os.getenv = self.original_getenv


class TestConfig(unittest.TestCase):
    """Test cases for configuration management"""

    def setUp(self):
        """Set up test fixtures"""
        queuebit.config._config_instance = None

        self.mock_env = MockEnvironment()
        self.mock_env.start_mocking()

    def tearDown(self):
        """Clean up after tests"""
        self.mock_env.stop_mocking()
        queuebit.config._config_instance = None

    def _write_config(self, content) -> str:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            if isinstance(content, str):
                f.write(content)
            else:
                json.dump(content, f)
            return f.name

    def test_default_config(self):
        """Test default configuration values"""
        config = get_config()

        self.assertEqual(config.get('server.host'), '127.0.0.1')
        self.assertEqual(config.get('server.port'), 3333)
        self.assertEqual(config.get('server.heartbeat_interval'), 25)

        self.assertEqual(config.get('broker.max_queue_size'), 10000)
        self.assertEqual(config.get('broker.delivery_batch_size'), 100)
        self.assertEqual(config.get('broker.expiry_sweep_interval_ms'), 1000)
        self.assertEqual(config.get('broker.default_subject'), 'default')

        self.assertEqual(config.get('logging.level'), 'INFO')

    def test_config_file_loading(self):
        """Test loading configuration from file"""
        config_file = self._write_config({
            "server": {"host": "0.0.0.0", "port": 8888},
            "broker": {"max_queue_size": 50}
        })

        try:
            self.mock_env.set('QB_CONFIG_FILE', config_file)
            config = get_config()

            self.assertEqual(config.get('server.host'), '0.0.0.0')
            self.assertEqual(config.get('server.port'), 8888)
            self.assertEqual(config.get('broker.max_queue_size'), 50)

            # Defaults survive for keys the file leaves out
            self.assertEqual(config.get('broker.delivery_batch_size'), 100)
            self.assertEqual(config.get('server.heartbeat_interval'), 25)
        finally:
            os.unlink(config_file)

    def test_environment_variable_override(self):
        """Test environment variable overrides"""
        self.mock_env.set('QB_SERVER_HOST', '192.168.1.100')
        self.mock_env.set('QB_SERVER_PORT', '7777')
        self.mock_env.set('QB_MAX_QUEUE_SIZE', '25')
        self.mock_env.set('QB_EXPIRY_SWEEP_INTERVAL_MS', '250')

        config = get_config()

        self.assertEqual(config.get('server.host'), '192.168.1.100')
        self.assertEqual(config.get('server.port'), 7777)
        self.assertEqual(config.get('broker.max_queue_size'), 25)
        self.assertEqual(config.get('broker.expiry_sweep_interval_ms'), 250)

    def test_environment_variable_type_conversion(self):
        """Test proper type conversion for environment variables"""
        self.mock_env.set('QB_DELIVERY_BATCH_SIZE', '10')
        self.mock_env.set('QB_CONNECTION_TIMEOUT', '2.5')
        self.mock_env.set('QB_LOG_LEVEL', 'debug')

        config = get_config()

        self.assertIsInstance(config.get('broker.delivery_batch_size'), int)
        self.assertEqual(config.get('server.connection_timeout'), 2.5)
        self.assertEqual(config.get('logging.level'), 'debug')

    def test_invalid_config_file(self):
        """Test handling of invalid config file"""
        config_file = self._write_config("invalid json content {")

        try:
            self.mock_env.set('QB_CONFIG_FILE', config_file)

            with self.assertLogs('root', level='WARNING') as log:
                config = get_config()
                self.assertEqual(config.get('server.port'), 3333)

            self.assertTrue(any('Failed to load config file' in message for message in log.output))
        finally:
            os.unlink(config_file)

    def test_nonexistent_config_file(self):
        """Test handling of non-existent config file"""
        self.mock_env.set('QB_CONFIG_FILE', "/path/that/does/not/exist.json")
        config = get_config()
        self.assertEqual(config.get('broker.max_queue_size'), 10000)

    def test_config_get_and_set(self):
        """Test dot notation access"""
        config = Config()

        self.assertEqual(config.get('nonexistent.key', 'default'), 'default')
        self.assertIsNone(config.get('nonexistent.key'))

        config.set('broker.max_queue_size', 3)
        config.set('extra.nested.value', True)
        self.assertEqual(config.get('broker.max_queue_size'), 3)
        self.assertTrue(config.get('extra.nested.value'))

    def test_get_int_validation(self):
        """Test integer settings are validated"""
        config = Config()

        self.assertEqual(config.get_int('broker.delivery_batch_size', 1), 100)
        self.assertEqual(config.get_int('missing.setting', 7), 7)

        config.set('broker.delivery_batch_size', 0)
        with self.assertRaises(ValueError):
            config.get_int('broker.delivery_batch_size', 100)

        config.set('broker.delivery_batch_size', 'many')
        with self.assertRaises(ValueError):
            config.get_int('broker.delivery_batch_size', 100)

    def test_save_and_reload(self):
        """Test saving configuration to a file and loading it back"""
        config = Config()
        config.set('broker.max_queue_size', 42)

        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, 'broker.json')
            config.save_to_file(path)

            reloaded = Config(path)
            self.assertEqual(reloaded.get('broker.max_queue_size'), 42)


if __name__ == '__main__':
    unittest.main()
