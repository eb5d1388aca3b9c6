"""Utility modules for configuration and helpers."""

from interactive_accompaniment.utils.config import Config, get_config
from interactive_accompaniment.utils.audio import InputDevice, check_input_device, list_input_devices

__all__ = ["Config", "get_config", "InputDevice", "check_input_device", "list_input_devices"]
