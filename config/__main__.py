"""Command line interface for testing configuration loading"""
from . import settings_conf
from .lib.load_settings_conf import DEFAULTS
from pathlib import Path

def main():
    """Display loaded configuration"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings_conf.items():
        print(f"{key}: {value}")

    # Save example configuration file
    example = Path("settings.conf.example")
    if not example.exists():
        with open(example, "w") as f:
            f.write("[DEFAULT]\n")
            for key, value in DEFAULTS.items():
                f.write(f"{key} = {value}\n")
        print(f"\nWrote {example}")

if __name__ == "__main__":
    main()
