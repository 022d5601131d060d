import click
import logging
from pathlib import Path
from datetime import datetime

from giottoflow.config import (PIPELINE_STAGES, read_config, write_config, update_config,
                               get_parameter_defaults)
from giottoflow.pipeline import run_pipeline
from giottoflow.utils.io import save_results
from giottoflow.utils.logging import setup_logging, log_system_info

def setup_output_dir(output_dir):
    """Create output directory structure"""
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    (output_path / "figures").mkdir(exist_ok=True)
    (output_path / "data").mkdir(exist_ok=True)

    return output_path

@click.group()
def cli():
    """giottoflow: spatial transcriptomics analysis pipeline"""
    pass

@cli.command()
@click.argument('output_path', type=click.Path())
def init_config(output_path):
    """Initialize a default configuration file"""
    config_path = Path(output_path)
    if config_path.exists() and not click.confirm(f"The file {output_path} already exists. Overwrite?"):
        click.echo("Aborted.")
        return

    write_config(get_parameter_defaults(), config_path)
    click.echo(f"Default configuration created at {output_path}")

@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file')
@click.option('--expression', type=click.Path(exists=True), help='Expression matrix (features x observations)')
@click.option('--locations', type=click.Path(exists=True), help='Spatial coordinates table')
@click.option('--output-dir', '-o', type=click.Path(), default=None, help='Output directory')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), default='INFO',
              help='Logging level')
@click.option('--stages', default=None,
              help=f"Comma separated stages to run. Known stages: {', '.join(PIPELINE_STAGES)}")
@click.option('--figures/--no-figures', default=True, help='Draw the standard figures')
def run(config, expression, locations, output_dir, log_level, stages, figures):
    """Run the giottoflow pipeline on a dataset"""
    cfg = update_config(get_parameter_defaults(), read_config(config) if config else {})
    if expression:
        cfg['data']['expression_path'] = expression
    if locations:
        cfg['data']['locations_path'] = locations
    if output_dir:
        cfg['output']['output_dir'] = output_dir
    output_path = setup_output_dir(cfg['output']['output_dir'])
    cfg['instructions']['save_dir'] = str(output_path / "figures")

    log_file = output_path / f"giottoflow_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    setup_logging(log_level, log_file)
    logger = logging.getLogger('giottoflow')
    logger.info(f"giottoflow analysis started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Using configuration from {config}" if config else "Using default configuration")
    log_system_info(logger)
    write_config(cfg, output_path / "config_used.yaml")

    try:
        selected = [s.strip() for s in stages.split(',')] if stages else None
        adata, _ = run_pipeline(cfg, stages=selected, figures=figures)
        if cfg['output']['save_adata']:
            logger.info("Saving analysis results...")
            save_results(adata, output_path / "data", save_formats=cfg['output']['save_formats'])

        logger.info(f"Analysis completed successfully at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        click.echo(f"Analysis completed successfully. Results saved to {output_path}")

    except Exception as e:
        logger.error(f"Analysis failed: {str(e)}", exc_info=True)
        click.echo(f"Analysis failed: {str(e)}")
        raise

def main():
    cli()

if __name__ == "__main__":
    main()
