#!/usr/bin/env python3
"""
Product Image Search Scraper with Resumable Progress

Reads a pipe-delimited list of products, runs one image search per product
description in a headless browser and appends the first three image URLs of
each search to the output CSV. Products with fewer than three images are also
written to a separate "incomplete" CSV.

Runs can be interrupted and restarted: the last completed row index is kept
in a JSON progress file and descriptions already present in the output CSV
are never searched again.
"""

import argparse
import asyncio
import csv
import json
import logging
import random
import sys
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote, urljoin

from bs4 import BeautifulSoup

from playwright_crawler import CrawlRequest, PlaywrightCrawler


# ============================================================================
# Configuration
# ============================================================================

INPUT_FILE = './src/productos_total.csv'
OUTPUT_FILE = './src/productos_con_imagenes.csv'
MISSING_FILE = './src/productos_sin_imagenes.csv'
PROGRESS_FILE = './src/progreso.json'

DELIMITER = '|'
DESCRIPTION_COLUMN = 'productos_descripcion'
IMAGE_COLUMNS = ['imagen1', 'imagen2', 'imagen3']
MAX_IMAGES = len(IMAGE_COLUMNS)

SEARCH_URL_TEMPLATE = 'https://www.google.com/search?tbm=isch&q={query}'
ACCEPT_LANGUAGE = 'es-ES,es;q=0.9,en;q=0.8'

MAX_CONCURRENCY = 2
MAX_RETRIES = 2

# Random delay ranges in seconds
PRE_NAVIGATION_DELAY = (2.0, 5.0)
SETTLE_DELAY = (2.0, 4.0)
COOLDOWN_DELAY = (1.5, 4.5)

# Progress marker value meaning "no row completed yet"
NO_PROGRESS = -1

Record = Dict[str, str]


# ============================================================================
# Error Handling and Logging Framework
# ============================================================================

class ScraperLogger:
    """Centralized logging system for the scraper."""

    def __init__(self, log_dir: str = "logs"):
        """Initialize logger with separate error and activity logs.

        Args:
            log_dir: Directory to store log files
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger("ImageSearchScraper")
        self.logger.setLevel(logging.DEBUG)

        # Drop handlers left over from a previous instance in this process
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        # Console handler for user-facing messages
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(message)s'))

        # File handler for detailed logs
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        file_handler = logging.FileHandler(
            self.log_dir / f"scraper_{timestamp}.log", encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

        self.logger.addHandler(console_handler)
        self.logger.addHandler(file_handler)

        # Error log CSV, doubles as the list of requests that were given up on
        self.error_log_path = self.log_dir / f"errors_{timestamp}.csv"
        self._init_error_log()

    def _init_error_log(self):
        """Initialize the error log CSV file."""
        with open(self.error_log_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                'timestamp', 'row_index', 'description', 'error_type',
                'error_message', 'url'
            ])

    def log_error(self, description: str, row_index: Optional[int], error_type: str,
                  error_message: str, url: str = ""):
        """Log an error to both console and CSV file.

        Args:
            description: Product description being processed
            row_index: Input row index (None for file-level errors)
            error_type: Type of error (e.g., 'FileNotFound', 'Timeout')
            error_message: Detailed error message
            url: URL that caused the error
        """
        timestamp = datetime.now().isoformat()

        if row_index is None:
            self.logger.error(f"{error_type} - {error_message}")
        else:
            self.logger.error(
                f"Error processing row {row_index} ({description}): {error_type} - {error_message}"
            )

        with open(self.error_log_path, 'a', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                timestamp, '' if row_index is None else row_index,
                description, error_type, error_message, url
            ])

    def info(self, message: str):
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str):
        """Log a warning message."""
        self.logger.warning(message)

    def debug(self, message: str):
        """Log a debug message."""
        self.logger.debug(message)


# ============================================================================
# CSV Input Processing for the Product List
# ============================================================================

class ProductListReader:
    """Reads and validates the pipe-delimited product list."""

    def __init__(self, csv_path: str, logger: ScraperLogger, delimiter: str = DELIMITER):
        """Initialize the reader.

        Args:
            csv_path: Path to the product list file
            logger: Logger instance for error reporting
            delimiter: Field separator character
        """
        self.csv_path = Path(csv_path)
        self.logger = logger
        self.delimiter = delimiter

    def read_products(self) -> List[Record]:
        """Read every product row, in file order.

        Returns:
            List of dictionaries keyed by the header columns

        Raises:
            OSError: If the file cannot be opened
            csv.Error: If the file cannot be parsed
            ValueError: If the description column is missing
        """
        products = []

        try:
            with open(self.csv_path, 'r', newline='', encoding='utf-8-sig') as f:
                reader = csv.DictReader(f, delimiter=self.delimiter, restval='')

                if not reader.fieldnames or DESCRIPTION_COLUMN not in reader.fieldnames:
                    message = f"CSV must have a '{DESCRIPTION_COLUMN}' column"
                    self.logger.log_error("", None, "InvalidFormat", message)
                    raise ValueError(message)

                for row in reader:
                    # Overflow values land under the None key
                    products.append({k: v for k, v in row.items() if k is not None})

        except OSError as e:
            self.logger.log_error("", None, "FileNotFound",
                                  f"Cannot open {self.csv_path}: {e}")
            raise
        except csv.Error as e:
            self.logger.log_error("", None, "CSVError",
                                  f"Error reading CSV file: {e}")
            raise

        self.logger.info(f"Loaded {len(products)} products from {self.csv_path}")
        return products


def load_processed_descriptions(output_path: str, logger: Optional[ScraperLogger] = None,
                                delimiter: str = DELIMITER) -> Set[str]:
    """Collect the descriptions already written to a previous output file.

    Args:
        output_path: Path to the full output CSV
        logger: Logger instance for debug output
        delimiter: Field separator character

    Returns:
        Set of descriptions (empty if the file does not exist)
    """
    path = Path(output_path)
    if not path.exists():
        return set()

    processed = set()
    with open(path, 'r', newline='', encoding='utf-8') as f:
        reader = csv.DictReader(f, delimiter=delimiter)
        if not reader.fieldnames or DESCRIPTION_COLUMN not in reader.fieldnames:
            return processed
        for row in reader:
            description = row.get(DESCRIPTION_COLUMN)
            if description:
                processed.add(description)

    if logger:
        logger.info(f"Found {len(processed)} products already in {path}")
    return processed


def filter_pending(products: List[Record], last_index: int,
                   processed: Set[str]) -> List[Tuple[int, Record]]:
    """Select the rows that still need a search.

    A row is pending when its index is greater than last_index and its
    description is not in processed. Input order is kept.
    """
    return [
        (index, row) for index, row in enumerate(products)
        if index > last_index and row.get(DESCRIPTION_COLUMN) not in processed
    ]


# ============================================================================
# Resumable Progress Tracking
# ============================================================================

class ProgressTracker:
    """Persists the highest row index below which every pending row is done.

    Rows finish out of order when more than one browser context is running.
    The persisted marker only moves forward over a contiguous run of
    completed pending rows, so a restart never skips a row that was still
    in flight or that failed.
    """

    def __init__(self, progress_path: str, logger: ScraperLogger):
        self.progress_path = Path(progress_path)
        self.logger = logger
        self.last_index = NO_PROGRESS
        self._outstanding = deque()
        self._registered: Set[int] = set()
        self._completed: Set[int] = set()
        self.lock = asyncio.Lock()

    def load(self) -> int:
        """Read the persisted marker, falling back to NO_PROGRESS."""
        self.last_index = NO_PROGRESS

        if not self.progress_path.exists():
            return self.last_index

        try:
            with open(self.progress_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            self.last_index = int(data['last_index'])
            self.logger.info(f"Resuming after row {self.last_index} "
                             f"(saved {data.get('timestamp', 'unknown')})")
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            self.logger.warning(f"Could not read progress file {self.progress_path}: {e}")
            self.last_index = NO_PROGRESS

        return self.last_index

    def start(self, pending_indices: Iterable[int]):
        """Register the rows this run will process, in ascending order."""
        ordered = sorted(pending_indices)
        self._outstanding = deque(ordered)
        self._registered = set(ordered)
        self._completed = set()

    async def complete(self, index: int) -> int:
        """Mark a row done and persist the marker if it moved.

        The in-memory marker only changes once the file write succeeds, so a
        failed save leaves the row outstanding and can be repeated.

        Returns:
            The current marker value
        """
        async with self.lock:
            if index not in self._registered:
                self.logger.debug(f"Ignoring completion of unregistered row {index}")
                return self.last_index

            self._completed.add(index)
            advanced = []
            for outstanding in self._outstanding:
                if outstanding not in self._completed:
                    break
                advanced.append(outstanding)

            if advanced:
                self.save(advanced[-1])
                for done in advanced:
                    self._outstanding.popleft()
                    self._completed.discard(done)
                    self._registered.discard(done)
                self.last_index = advanced[-1]

            return self.last_index

    def save(self, last_index: int):
        """Write the marker to disk, replacing the previous file."""
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.progress_path.with_name(self.progress_path.name + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump({
                'last_index': last_index,
                'timestamp': datetime.now().isoformat()
            }, f, indent=2)
        tmp_path.replace(self.progress_path)
        self.logger.debug(f"Progress saved: row {last_index}")


# ============================================================================
# Output CSV Writer
# ============================================================================

class DelimitedRowWriter:
    """Appends records to a delimited file, writing the header once."""

    def __init__(self, path: str, delimiter: str = DELIMITER,
                 logger: Optional[ScraperLogger] = None):
        """Initialize the writer.

        Args:
            path: Output file path
            delimiter: Field separator character
            logger: Logger for header mismatch warnings
        """
        self.path = Path(path)
        self.delimiter = delimiter
        self.logger = logger
        self.header_written = False
        self.header_mismatch = False
        self.lock = asyncio.Lock()

    async def append(self, row: Record):
        """Append a record while holding the writer lock."""
        async with self.lock:
            self.write_row(row)

    def write_row(self, row: Record):
        """Append a record, preceded by the header if the file is empty."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if not self.header_written and self.path.exists() and self.path.stat().st_size > 0:
            self._check_existing_header(list(row.keys()))
            self.header_written = True

        with open(self.path, 'a', newline='', encoding='utf-8') as f:
            if not self.header_written:
                header_writer = csv.writer(f, delimiter=self.delimiter,
                                           quoting=csv.QUOTE_MINIMAL, lineterminator='\n')
                header_writer.writerow(list(row.keys()))
                self.header_written = True

            writer = csv.writer(f, delimiter=self.delimiter,
                                quoting=csv.QUOTE_ALL, lineterminator='\n')
            writer.writerow(['' if value is None else str(value) for value in row.values()])

    def _check_existing_header(self, columns: List[str]):
        """Warn when the file on disk was written with different columns."""
        with open(self.path, 'r', newline='', encoding='utf-8') as f:
            existing = next(csv.reader(f, delimiter=self.delimiter), [])

        if existing != columns:
            self.header_mismatch = True
            if self.logger:
                self.logger.warning(
                    f"Header of {self.path} ({self.delimiter.join(existing)}) does not match "
                    f"the current columns ({self.delimiter.join(columns)}); "
                    f"rows are appended under the existing header"
                )


# ============================================================================
# Search URL and Image Extraction
# ============================================================================

def build_search_url(description: str, template: str = SEARCH_URL_TEMPLATE) -> str:
    """Build the image search URL for a product description."""
    # Same escaping as JavaScript's encodeURIComponent
    query = quote(description.strip(), safe="!~*'()")
    return template.format(query=query)


def extract_image_urls(html: str, base_url: str = "", limit: int = MAX_IMAGES) -> List[str]:
    """Return the first image sources of a rendered page, in DOM order.

    Args:
        html: Page HTML after JavaScript execution
        base_url: Page URL used to resolve relative sources
        limit: Maximum number of URLs to return

    Returns:
        List of at most limit non-empty image URLs
    """
    soup = BeautifulSoup(html, 'lxml')
    image_urls = []

    for img in soup.find_all('img'):
        src = (img.get('src') or '').strip()
        if not src:
            continue
        image_urls.append(urljoin(base_url, src) if base_url else src)
        if len(image_urls) >= limit:
            break

    return image_urls


def merge_image_urls(row: Record, image_urls: List[str]) -> Record:
    """Set the image columns on a record, blank where no URL was found."""
    for position, column in enumerate(IMAGE_COLUMNS):
        row[column] = image_urls[position] if position < len(image_urls) else ''
    return row


# ============================================================================
# Main Async Scraper Class
# ============================================================================

class ImageSearchScraper:
    """Main async scraper orchestrator with resumable progress."""

    def __init__(self, input_csv: str = INPUT_FILE,
                 output_csv: str = OUTPUT_FILE,
                 missing_csv: str = MISSING_FILE,
                 progress_file: str = PROGRESS_FILE,
                 log_dir: str = "logs",
                 max_concurrency: int = MAX_CONCURRENCY,
                 max_retries: int = MAX_RETRIES,
                 max_requests: Optional[int] = None,
                 headless: bool = True,
                 search_url_template: str = SEARCH_URL_TEMPLATE,
                 pre_navigation_delay: Tuple[float, float] = PRE_NAVIGATION_DELAY,
                 settle_delay: Tuple[float, float] = SETTLE_DELAY,
                 cooldown_delay: Tuple[float, float] = COOLDOWN_DELAY,
                 crawler_factory: Optional[Callable] = None,
                 logger: Optional[ScraperLogger] = None):
        """Initialize the scraper.

        Args:
            input_csv: Path to the pipe-delimited product list
            output_csv: Path to the output CSV with every processed product
            missing_csv: Path to the CSV of products with fewer than 3 images
            progress_file: Path to the JSON progress file
            log_dir: Directory for log files
            max_concurrency: Browser contexts running at the same time
            max_retries: Extra attempts per product after a failure
            max_requests: Maximum searches in this run (None = all pending)
            headless: Run the browser without a window
            search_url_template: Search URL with a {query} placeholder
            pre_navigation_delay: Random delay range before each navigation
            settle_delay: Random delay range after the page loads
            cooldown_delay: Random delay range after the row is written
            crawler_factory: Callable building the crawler (default: PlaywrightCrawler)
            logger: Logger to use instead of creating one in log_dir
        """
        self.input_csv = input_csv
        self.output_csv = output_csv
        self.missing_csv = missing_csv
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.max_requests = max_requests
        self.headless = headless
        self.search_url_template = search_url_template
        self.pre_navigation_delay = pre_navigation_delay
        self.settle_delay = settle_delay
        self.cooldown_delay = cooldown_delay
        self.crawler_factory = crawler_factory or PlaywrightCrawler

        # Initialize components
        self.logger = logger or ScraperLogger(log_dir)
        self.reader = ProductListReader(input_csv, self.logger)
        self.progress = ProgressTracker(progress_file, self.logger)
        self.output_writer = DelimitedRowWriter(output_csv, logger=self.logger)
        self.missing_writer = DelimitedRowWriter(missing_csv, logger=self.logger)

        self.products: List[Record] = []
        # Per-row state kept across retries so a row is never written twice
        self.extracted: Dict[int, List[str]] = {}
        self.written_missing: Set[int] = set()
        self.written_output: Set[int] = set()
        self.stats_lock = None  # Will be initialized in run()

        # Statistics
        self.stats = {
            'products_loaded': 0,
            'products_skipped': 0,
            'products_processed': 0,
            'products_incomplete': 0,
            'errors_encountered': 0
        }

    async def run(self) -> Dict[str, int]:
        """Execute the scraping process.

        Raises:
            OSError, csv.Error, ValueError: If the product list cannot be loaded
        """
        self.logger.info("=" * 60)
        self.logger.info("Product Image Search Scraper")
        self.logger.info("=" * 60)

        self.stats_lock = asyncio.Lock()

        self.products = self.reader.read_products()
        self.stats['products_loaded'] = len(self.products)

        processed = load_processed_descriptions(self.output_csv, self.logger)
        last_index = self.progress.load()
        pending = filter_pending(self.products, last_index, processed)
        self.stats['products_skipped'] = len(self.products) - len(pending)

        if not pending:
            self.logger.info("No pending products. Exiting.")
            self._print_summary()
            return self.stats

        self.logger.info(f"{len(pending)} pending products "
                         f"({self.stats['products_skipped']} already done)")

        self.progress.start(index for index, _ in pending)

        requests = [
            CrawlRequest(
                url=build_search_url(row[DESCRIPTION_COLUMN], self.search_url_template),
                user_data={'row_index': index}
            )
            for index, row in pending
        ]

        crawler = self.crawler_factory(
            self.logger,
            max_concurrency=self.max_concurrency,
            max_retries=self.max_retries,
            max_requests=self.max_requests,
            pre_navigation_hooks=[self._pre_navigation],
            on_failure=self._on_failure,
            headless=self.headless
        )
        async with crawler:
            await crawler.run(requests, self._handle_request)

        self._print_summary()
        return self.stats

    async def _pre_navigation(self, page, request: CrawlRequest):
        """Set the locale header and wait a random delay before loading."""
        await page.set_extra_http_headers({'Accept-Language': ACCEPT_LANGUAGE})
        await self._random_sleep(self.pre_navigation_delay)

    async def _handle_request(self, page, request: CrawlRequest):
        """Extract images for one product and append it to the output files."""
        row_index = request.user_data['row_index']
        row = self.products[row_index]

        self.logger.info(f"Processing [{row_index}]: {row[DESCRIPTION_COLUMN]}")

        if row_index in self.extracted:
            # Retry after a later step failed: keep what was already written
            image_urls = self.extracted[row_index]
        else:
            await self._random_sleep(self.settle_delay)
            html = await page.content()
            image_urls = extract_image_urls(html, page.url)
            self.extracted[row_index] = image_urls
        merge_image_urls(row, image_urls)

        incomplete = len(image_urls) < MAX_IMAGES
        # Full output last: a row there means the product is fully handled
        if incomplete and row_index not in self.written_missing:
            await self.missing_writer.append(row)
            self.written_missing.add(row_index)

        if row_index not in self.written_output:
            await self.output_writer.append(row)
            self.written_output.add(row_index)
            self.logger.debug(f"Row {row_index}: {len(image_urls)} images")

            async with self.stats_lock:
                self.stats['products_processed'] += 1
                if incomplete:
                    self.stats['products_incomplete'] += 1

        await self.progress.complete(row_index)

        await self._random_sleep(self.cooldown_delay)

    async def _on_failure(self, request: CrawlRequest, error: Exception):
        """Record a product whose search failed on every attempt."""
        row_index = request.user_data.get('row_index')
        description = self.products[row_index].get(DESCRIPTION_COLUMN, '') \
            if row_index is not None else ''

        self.logger.log_error(
            description,
            row_index,
            type(error).__name__,
            str(error),
            request.url
        )
        async with self.stats_lock:
            self.stats['errors_encountered'] += 1

    async def _random_sleep(self, delay_range: Tuple[float, float]):
        low, high = delay_range
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high))

    def _print_summary(self):
        """Print final summary statistics."""
        self.logger.info("\n" + "=" * 60)
        self.logger.info("SCRAPING COMPLETE")
        self.logger.info("=" * 60)
        self.logger.info(f"Products loaded: {self.stats['products_loaded']}")
        self.logger.info(f"Products skipped (already done): {self.stats['products_skipped']}")
        self.logger.info(f"Products processed: {self.stats['products_processed']}")
        self.logger.info(f"Products with fewer than {MAX_IMAGES} images: "
                         f"{self.stats['products_incomplete']}")
        self.logger.info(f"Errors encountered: {self.stats['errors_encountered']}")
        self.logger.info(f"\nResults: {Path(self.output_csv).absolute()}")
        self.logger.info(f"Incomplete: {Path(self.missing_csv).absolute()}")
        self.logger.info(f"Progress file: {self.progress.progress_path.absolute()}")
        self.logger.info(f"Error log: {self.logger.error_log_path}")


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        description='Product Image Search Scraper - resumable image URL collection',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Process the default product list, resuming from the last run
  python image_search_scraper.py

  # Try 20 products with a visible browser
  python image_search_scraper.py --max-requests 20 --headed

  # Custom input/output paths
  python image_search_scraper.py --input productos.csv --output con_imagenes.csv --missing sin_imagenes.csv
        '''
    )

    parser.add_argument(
        '--input',
        type=str,
        default=INPUT_FILE,
        metavar='FILE',
        help=f'Pipe-delimited product list (default: {INPUT_FILE})'
    )

    parser.add_argument(
        '--output',
        type=str,
        default=OUTPUT_FILE,
        metavar='FILE',
        help=f'Output CSV for every processed product (default: {OUTPUT_FILE})'
    )

    parser.add_argument(
        '--missing',
        type=str,
        default=MISSING_FILE,
        metavar='FILE',
        help=f'Output CSV for products with fewer than {MAX_IMAGES} images (default: {MISSING_FILE})'
    )

    parser.add_argument(
        '--progress',
        type=str,
        default=PROGRESS_FILE,
        metavar='FILE',
        help=f'JSON progress file used to resume (default: {PROGRESS_FILE})'
    )

    parser.add_argument(
        '--concurrent',
        type=int,
        default=MAX_CONCURRENCY,
        metavar='N',
        help=f'Browser contexts running at the same time (default: {MAX_CONCURRENCY})'
    )

    parser.add_argument(
        '--max-retries',
        type=int,
        default=MAX_RETRIES,
        metavar='N',
        help=f'Extra attempts per product after a failure (default: {MAX_RETRIES})'
    )

    parser.add_argument(
        '--max-requests',
        type=int,
        default=None,
        metavar='N',
        help='Maximum searches in this run (default: all pending products)'
    )

    parser.add_argument(
        '--log-dir',
        type=str,
        default='logs',
        metavar='DIR',
        help='Directory for log files (default: logs/)'
    )

    parser.add_argument(
        '--headed',
        action='store_true',
        help='Show the browser window'
    )

    args = parser.parse_args(argv)

    if args.concurrent < 1:
        parser.error('--concurrent must be at least 1')
    if args.max_retries < 0:
        parser.error('--max-retries cannot be negative')
    if args.max_requests is not None and args.max_requests < 1:
        parser.error('--max-requests must be at least 1')

    scraper = ImageSearchScraper(
        input_csv=args.input,
        output_csv=args.output,
        missing_csv=args.missing,
        progress_file=args.progress,
        log_dir=args.log_dir,
        max_concurrency=args.concurrent,
        max_retries=args.max_retries,
        max_requests=args.max_requests,
        headless=not args.headed
    )

    try:
        asyncio.run(scraper.run())
    except (OSError, csv.Error, ValueError):
        # Already written to the error log by the reader
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
