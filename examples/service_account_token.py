"""Basic example of obtaining a service-account access token with pctl."""

import sys

from pctl import (
    ExchangeError,
    KeyMaterialError,
    PctlError,
    ServiceAccountTokenGenerator,
    TransportError,
    load_config,
    normalize,
)


def main(config_path: str = "token.yaml") -> int:
    # Load and validate the configuration
    request = normalize(load_config(config_path))

    with ServiceAccountTokenGenerator(request) as generator:
        try:
            result = generator.generate()
        except KeyMaterialError as e:
            print(f"Key problem ({e.field}): {e.message} - regenerate the service account key")
            return 1
        except ExchangeError as e:
            print(f"Rejected with status {e.status_code} - check that the service account is enabled")
            return 1
        except TransportError as e:
            print(f"Could not reach {e.endpoint}: {e.message} - try again")
            return 1
        except PctlError as e:
            print(f"Token request failed: {e.message}")
            return 1

    print(f"Token type: {result.token_type}")
    print(f"Expires at: {result.expires_at.isoformat()}")
    return 0


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
