import os
import json
from typing import Callable, Dict, List, Optional


DEFAULT_CANARY_SCHEDULE = "5,10,25,50,100"


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("PROMOTE_SSM_PREFIX", "").rstrip("/")
        self.mutations_disabled = self._as_bool(self._get("mutations_disabled", "PROMOTE_MUTATIONS_DISABLED", "0", str))
        self.db_path = os.getenv("PROMOTE_DB_PATH", "./data/promotion.db")

        self.executor_mode = os.getenv("PROMOTE_EXECUTOR_MODE", "http")
        self.executor_url = self._get("executor/url", "PROMOTE_EXECUTOR_URL", "", str)
        self.executor_header_name = self._get("executor/header_name", "PROMOTE_EXECUTOR_HEADER_NAME", "", str)
        self.executor_header_value = self._resolve_secret(
            self._get("executor/header_value", "PROMOTE_EXECUTOR_HEADER_VALUE", "", str)
        )
        self.executor_timeout_seconds = self._get("executor/timeout_seconds", "PROMOTE_EXECUTOR_TIMEOUT_SECONDS", 30.0, float)

        self.oidc_issuer = self._get("oidc/issuer", "PROMOTE_OIDC_ISSUER", "", str)
        self.oidc_audience = self._get("oidc/audience", "PROMOTE_OIDC_AUDIENCE", "", str)
        self.oidc_jwks_url = self._get("oidc/jwks_url", "PROMOTE_OIDC_JWKS_URL", "", str)
        self.oidc_roles_claim = self._get(
            "oidc/roles_claim",
            "PROMOTE_OIDC_ROLES_CLAIM",
            "https://promote.example/claims/roles",
            str,
        )
        self.oidc_teams_claim = self._get(
            "oidc/teams_claim",
            "PROMOTE_OIDC_TEAMS_CLAIM",
            "https://promote.example/claims/teams",
            str,
        )

        schedule = self._get("canary_schedule", "PROMOTE_CANARY_SCHEDULE", DEFAULT_CANARY_SCHEDULE, str)
        self.canary_schedule = self._parse_int_list(schedule)
        self.canary_step_hold_seconds = self._get("canary_step_hold_seconds", "PROMOTE_CANARY_STEP_HOLD_SECONDS", 30.0, float)
        self.canary_step_timeout_seconds = self._get(
            "canary_step_timeout_seconds", "PROMOTE_CANARY_STEP_TIMEOUT_SECONDS", 300.0, float
        )
        self.canary_check_interval_seconds = self._get(
            "canary_check_interval_seconds", "PROMOTE_CANARY_CHECK_INTERVAL_SECONDS", 10.0, float
        )
        self.canary_max_error_rate = self._get("canary_max_error_rate", "PROMOTE_CANARY_MAX_ERROR_RATE", 0.02, float)
        # Mirrors the 30 x 10s loop of the slot health-check script.
        self.health_check_retries = self._get("health_check_retries", "PROMOTE_HEALTH_CHECK_RETRIES", 30, int)
        self.health_check_interval_seconds = self._get(
            "health_check_interval_seconds", "PROMOTE_HEALTH_CHECK_INTERVAL_SECONDS", 10.0, float
        )
        self.rollout_lease_ttl_seconds = self._get("rollout_lease_ttl_seconds", "PROMOTE_ROLLOUT_LEASE_TTL_SECONDS", 3600, int)

        self.default_region = self._get("default_region", "PROMOTE_DEFAULT_REGION", "eastus", str)
        required_tools = self._get("required_quality_tools", "PROMOTE_REQUIRED_QUALITY_TOOLS", "sonar,checkmarx", str)
        self.required_quality_tools = [t.strip().lower() for t in required_tools.split(",") if t.strip()]
        cors = os.getenv("PROMOTE_CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
        self.cors_origins = [o.strip() for o in cors.split(",") if o.strip()]

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _parse_int_list(self, value: str) -> List[int]:
        items = []
        for part in str(value or "").split(","):
            part = part.strip()
            if not part:
                continue
            try:
                items.append(int(part))
            except ValueError:
                return [int(p) for p in DEFAULT_CANARY_SCHEDULE.split(",")]
        return items

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _resolve_secret(self, value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str):
            return value
        if not value.startswith("arn:aws:secretsmanager:"):
            return value
        try:
            import boto3
        except Exception:
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
            return response.get("SecretString", value)
        except Exception:
            return value


def read_ssm(name: str) -> Optional[str]:
    try:
        import boto3
        from botocore.exceptions import ClientError
    except Exception:
        return None
    try:
        client = boto3.client("ssm")
        response = client.get_parameter(Name=name, WithDecryption=True)
        return response.get("Parameter", {}).get("Value")
    except ClientError:
        return None


def _split_csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in str(value or "").split(",") if item.strip()]


class ParameterConfigSource:
    """Read-through view of the operational configuration.

    Nothing here is cached: bypass flags and authorized principals are expected
    to be flipped immediately before one deployment and cleared right after, so
    every lookup goes back to the environment or Parameter Store.
    Application-scoped SSM parameters win over environment-scoped ones.
    """

    def __init__(self, ssm_prefix: Optional[str] = None, reader: Callable[[str], Optional[str]] = read_ssm) -> None:
        self.ssm_prefix = (ssm_prefix if ssm_prefix is not None else os.getenv("PROMOTE_SSM_PREFIX", "")).rstrip("/")
        self._reader = reader

    def _lookup(self, env_key: str, ssm_keys: List[str]) -> Optional[str]:
        value = os.environ.get(env_key)
        if value is not None and value.strip():
            return value.strip()
        if not self.ssm_prefix:
            return None
        for key in ssm_keys:
            found = self._reader(f"{self.ssm_prefix}/{key}")
            if found is not None and str(found).strip():
                return str(found).strip()
        return None

    def environment_coordinates(self, environment: str, application: str) -> Dict[str, Optional[str]]:
        suffix = environment.upper()
        coordinates = {}
        for field, env_name in (
            ("cluster_name", f"PROMOTE_AKS_CLUSTER_NAME_{suffix}"),
            ("resource_group", f"PROMOTE_AKS_RESOURCE_GROUP_{suffix}"),
            ("region", f"PROMOTE_AKS_REGION_{suffix}"),
        ):
            coordinates[field] = self._lookup(
                env_name,
                [
                    f"applications/{application}/{environment}/{field}",
                    f"environments/{environment}/{field}",
                ],
            )
        return coordinates

    def bypass_flags(self, environment: str, application: str) -> Dict[str, bool]:
        flags = {}
        for tool in ("sonar", "checkmarx"):
            raw = self._lookup(
                f"PROMOTE_BYPASS_{tool.upper()}",
                [
                    f"applications/{application}/{environment}/bypass_{tool}",
                    f"environments/{environment}/bypass_{tool}",
                    f"bypass_{tool}",
                ],
            )
            flags[tool] = str(raw or "").strip().lower() in {"1", "true", "yes", "on"}
        return flags

    def authorized_principals(self, environment: str, application: str) -> Dict[str, frozenset]:
        principals = self._lookup(
            "PROMOTE_AUTHORIZED_PRINCIPALS",
            [f"applications/{application}/authorized_principals", f"environments/{environment}/authorized_principals"],
        )
        teams = self._lookup(
            "PROMOTE_AUTHORIZED_TEAMS",
            [f"applications/{application}/authorized_teams", f"environments/{environment}/authorized_teams"],
        )
        return {
            "principals": frozenset(_split_csv(principals)),
            "teams": frozenset(_split_csv(teams)),
        }

    def branch_policies(self) -> Optional[Dict[str, List[str]]]:
        raw = self._lookup("PROMOTE_BRANCH_POLICIES", ["branch_policies"])
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        policies: Dict[str, List[str]] = {}
        for env_name, patterns in parsed.items():
            if isinstance(patterns, str):
                patterns = [patterns]
            if not isinstance(patterns, list):
                continue
            policies[str(env_name)] = [str(p) for p in patterns if isinstance(p, str) and p.strip()]
        return policies


SETTINGS = Settings()
