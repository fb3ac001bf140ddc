from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SC_",
    )

    # Monte Carlo execution
    simulation_batch_size: int = 1000
    simulation_max_workers: int = 4
    reservoir_capacity: int = 100_000  # trial rows kept for percentiles

    # Numerics
    psd_tolerance: float = 1e-10
    uniform_clip: float = 1e-12

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"
