import argparse
import functools
import platform
import time

if platform.system() == "Darwin":
    n_jobs = -1
else:
    n_jobs = 1


# Define a global switch for progress printing
PRINT_PROGRESS = True  # Set to False to disable progress printing
# ANSI escape code for green text
G = "\033[32m"
E = "\033[0m"


def _print_progress(i, n, t0, prefix="", suffix="", bar_length=20):
    if not PRINT_PROGRESS:
        return

    # Calculate elapsed time and time remaining
    elapsed_time = time.time() - t0
    avg_time_per_iter = elapsed_time / (i + 1)
    tr = round(avg_time_per_iter * (n - i - 1))

    if tr >= 60:
        minutes, seconds = divmod(tr, 60)
        t = f"{minutes}m {seconds}s"
    else:
        t = f"{tr}s"

    # A single iteration is always complete
    if n > 1:
        percent = 100 * (i / (n - 1))
        filled_length = int(bar_length * i // (n - 1))
    else:
        percent = 100.0
        filled_length = bar_length
    bar = "#" * filled_length + "-" * (bar_length - filled_length)

    print(
        f"\r{G}{prefix}{E} --> |{bar}| {percent:.1f}%, Remain time: {t} {suffix}",
        end=" " * 2,
    )

    if i == n - 1:
        print(
            f"\r{G}{prefix}{E} --> |{bar}| {percent:.1f}%, Total time: {G}{elapsed_time:.2f} s{E}"
        )

    return


def timeit(print_time=True):
    """
    Decorator to measure execution time of a function.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            t0 = time.time()
            result = func(*args, **kwargs)
            elapsed_time = time.time() - t0

            if print_time:
                print(
                    f"{G}{func.__name__}{E} --> Total time: {G}{elapsed_time:.5f} s{E}"
                )

            return result

        return wrapper

    return decorator


def get_args(settings, argv=None):
    """
    Build the command line options from a list of dictionaries of defaults.

    Lists become nargs="*" options, booleans become flags and nested
    dictionaries are flattened into integer options.
    """
    parser = argparse.ArgumentParser()

    for d in settings:
        for key, v in d.items():
            key = key.replace("_", "-")
            if isinstance(v, list):
                parser.add_argument(f"--{key}", type=type(v[0]), nargs="*", default=v)
            elif isinstance(v, bool):
                parser.add_argument(f"--{key}", action="store_true", default=v)
            elif isinstance(v, dict):
                for k, w in v.items():
                    k = k.replace("_", "-")
                    parser.add_argument(f"--{k}", type=int, default=w)
            else:
                parser.add_argument(f"--{key}", type=type(v), default=v)

    args = parser.parse_args(argv)

    return args
